"""Login security core: attempt tracking, lockouts, IP blocks, delay and captcha gating."""
