from pydantic import BaseModel


class ErrorResponse(BaseModel):
    error: str
    code: str | None = None
    detail: str | None = None
    request_id: str | None = None
