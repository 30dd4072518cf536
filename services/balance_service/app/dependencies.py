from __future__ import annotations

import httpx
from fastapi import Depends, HTTPException, Query, Request, status
from jose import JWTError, jwt
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared import JWKSClient

from .db.session import async_session_factory
from .principal import Principal
from .services.balance_facade import BalanceFacade
from .services.fund_requests import FundRequestWorkflow
from .services.orders import OrderWorkflow
from .settings import balance_settings

ACCEPTED_SCOPES = {"access"}

_jwks_clients: dict[str, JWKSClient] = {}


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_factory


def get_page_size(limit: int | None = Query(None, ge=1)) -> int:
    settings = balance_settings()
    return min(limit or settings.default_page_size, settings.max_page_size)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _jwks_client(url: str) -> JWKSClient:
    client = _jwks_clients.get(url)
    if client is None:
        client = _jwks_clients[url] = JWKSClient(url)
    return client


def _decode_token(token: str) -> dict:
    settings = balance_settings()
    if settings.jwks_url:
        try:
            kid = jwt.get_unverified_header(token).get("kid")
        except JWTError as exc:
            raise _unauthorized("Invalid token") from exc
        if not kid:
            raise _unauthorized("Token is missing a key id")
        try:
            key = _jwks_client(settings.jwks_url).get_key(kid)
        except KeyError as exc:
            raise _unauthorized("Unknown signing key") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.bind(error=str(exc)).error("balance.auth.jwks_unavailable")
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Signing keys unavailable") from exc
        algorithms = ["RS256"]
    else:
        key = settings.secret_key
        algorithms = ["HS256"]
    return jwt.decode(
        token,
        key,
        algorithms=algorithms,
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )


def _roles(claims: dict) -> frozenset[str]:
    roles: set[str] = set()
    for raw in (claims.get("roles"), claims.get("role")):
        if not raw:
            continue
        if isinstance(raw, str):
            roles.update(part for part in raw.replace(",", " ").split() if part)
        else:
            roles.update(str(role) for role in raw)
    return frozenset(roles)


def get_current_principal(request: Request) -> Principal:
    """Resolve the caller from a bearer access token.

    Tokens come from the identity provider: HS256 with the shared secret, or
    RS256 against its JWKS when ``BALANCE_JWKS_URL`` is set. The subject must
    be a numeric user id; roles are read from ``roles`` (list or string) or a
    single ``role`` claim.
    """
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise _unauthorized("Missing bearer token")
    token = auth.split(" ", 1)[1].strip()
    try:
        claims = _decode_token(token)
    except JWTError as exc:
        logger.bind(error=str(exc)).warning("balance.auth.jwt_decode_failed")
        raise _unauthorized("Invalid token") from exc

    scope = claims.get("scope")
    if scope not in ACCEPTED_SCOPES:
        logger.bind(scope=scope).info("balance.auth.scope_rejected")
        raise _unauthorized("Invalid token scope")

    sub = claims.get("sub")
    if sub is None:
        raise _unauthorized("Missing subject")
    if not (isinstance(sub, str) and sub.isdigit()):
        logger.bind(subject=sub).info("balance.auth.unsupported_subject_format")
        raise _unauthorized("Unsupported subject format (expected numeric)")

    return Principal(user_id=int(sub), roles=_roles(claims), email=claims.get("email"))


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return principal


def scope_user(principal: Principal, user_id: int | None) -> int | None:
    # Admins may look at everyone or narrow to one user; users only see their own
    if principal.is_admin:
        return user_id
    return principal.user_id


def get_facade(
    request: Request,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> BalanceFacade:
    # One facade per app so every request shares the same per-user locks
    facade = getattr(request.app.state, "balance_facade", None)
    if facade is None:
        facade = BalanceFacade.from_settings(session_factory, balance_settings())
        request.app.state.balance_facade = facade
    return facade


def get_fund_requests(facade: BalanceFacade = Depends(get_facade)) -> FundRequestWorkflow:
    return FundRequestWorkflow(facade)


def get_orders(request: Request, facade: BalanceFacade = Depends(get_facade)) -> OrderWorkflow:
    orders = getattr(request.app.state, "order_workflow", None)
    if orders is None:
        orders = OrderWorkflow.from_settings(facade, balance_settings())
        request.app.state.order_workflow = orders
    return orders
