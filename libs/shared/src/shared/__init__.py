from .errors import ServiceError, register_exception_handlers
from .jwks import JWKSClient
from .request_context import REQUEST_ID_HEADER, RequestIDMiddleware
from .schemas import ErrorResponse

__all__ = [
    "ErrorResponse",
    "JWKSClient",
    "REQUEST_ID_HEADER",
    "RequestIDMiddleware",
    "ServiceError",
    "register_exception_handlers",
]
