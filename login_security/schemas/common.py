from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    store: str
    store_backend: str
