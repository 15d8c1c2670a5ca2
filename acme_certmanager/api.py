"""
HTTP API over the certificate manager.

Every route except ``/healthz`` requires a bearer token (see
:mod:`acme_certmanager.auth`). Handlers are plain functions so FastAPI runs
the blocking store and CA calls in its worker thread pool.
"""

import logging
import time
from datetime import datetime

from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from acme_certmanager import __version__, exceptions
from acme_certmanager.auth import TokenVerifier, UserClaims
from acme_certmanager.config import Settings
from acme_certmanager.core import CertificateManager
from acme_certmanager.records import Certificate, CertificateConfig, ChallengeType
from acme_certmanager.storage import PEM_CONTENT_TYPE

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("acme_certmanager.access")


class AccountRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)


class AccountResponse(BaseModel):
    id: str
    email: str


class CertificateRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    domains: list[str] = Field(..., min_length=1)
    challenge_type: str = ChallengeType.HTTP.value
    dns_provider: str = "manual"


class CertificateResponse(BaseModel):
    id: str
    account_id: str
    domains: list[str]
    challenge_type: str
    issued_at: datetime | None = None

    @classmethod
    def from_certificate(cls, certificate: Certificate) -> "CertificateResponse":
        return cls(
            id=certificate.id,
            account_id=certificate.account_id,
            domains=certificate.domains,
            challenge_type=certificate.challenge_type,
            issued_at=certificate.issued_at,
        )


# Response bodies name the error category only, never identifiers or causes.
ERROR_RESPONSES: list[tuple[type[exceptions.CertManagerError], int, str]] = [
    (exceptions.InvalidEmail, status.HTTP_400_BAD_REQUEST, "Invalid email address"),
    (exceptions.InvalidDomain, status.HTTP_400_BAD_REQUEST, "Invalid domain"),
    (exceptions.UnsupportedChallengeType, status.HTTP_400_BAD_REQUEST, "Unsupported challenge type"),
    (exceptions.UnsupportedDNSProvider, status.HTTP_400_BAD_REQUEST, "Unsupported DNS provider"),
    (exceptions.AccountNotFound, status.HTTP_404_NOT_FOUND, "Account not found"),
    (exceptions.CertificateNotFound, status.HTTP_404_NOT_FOUND, "Certificate not found"),
    (exceptions.DuplicateAccount, status.HTTP_409_CONFLICT, "Account already exists"),
    (exceptions.ObtainFailure, status.HTTP_502_BAD_GATEWAY, "Certificate authority request failed"),
    (exceptions.AcmeError, status.HTTP_502_BAD_GATEWAY, "Certificate authority request failed"),
]


def error_response(exc: exceptions.CertManagerError) -> tuple[int, str]:
    """Map an error to the status code and message returned to clients."""
    for error_type, status_code, message in ERROR_RESPONSES:
        if isinstance(exc, error_type):
            return status_code, message
    return status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error"


async def handle_certmanager_error(request: Request, exc: exceptions.CertManagerError) -> JSONResponse:
    status_code, message = error_response(exc)
    if isinstance(exc, exceptions.PostIssuancePersistenceFailure):
        logger.critical(f"{request.method} {request.url.path}: {exc}")
    elif status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": message})


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Write one combined-log-style line per request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start = time.monotonic()
        response: Response = await call_next(request)
        elapsed = time.monotonic() - start

        client_ip = request.client.host if request.client else "-"
        protocol = f"HTTP/{request.scope.get('http_version', '1.1')}"
        access_logger.info(
            '%s - - "%s %s %s" %d %s "%s" "%s" %.3f',
            client_ip,
            request.method,
            request.url.path,
            protocol,
            response.status_code,
            response.headers.get("content-length", "0"),
            request.headers.get("referer", ""),
            request.headers.get("user-agent", ""),
            elapsed,
        )
        return response


def create_app(
    manager: CertificateManager,
    settings: Settings | None = None,
    verifier: TokenVerifier | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        manager: Manager the handlers delegate to.
        settings: Used to build the token verifier when ``verifier`` is not given.
        verifier: Bearer token dependency.
    """
    if verifier is None:
        settings = settings or Settings()
        verifier = TokenVerifier(
            enabled=settings.auth_enabled,
            public_key_path=settings.auth_public_key_path,
            algorithms=settings.auth_algorithms,
        )
    if not verifier.enabled:
        logger.warning("Authentication is disabled; every request is accepted")

    app = FastAPI(title="ACME Certificate Manager", version=__version__)
    app.state.manager = manager
    app.add_middleware(AccessLogMiddleware)
    app.add_exception_handler(exceptions.CertManagerError, handle_certmanager_error)

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "OK"

    router = APIRouter(dependencies=[Depends(verifier)])

    @router.post("/accounts", status_code=status.HTTP_201_CREATED, response_model=AccountResponse)
    def create_account(body: AccountRequest, user: UserClaims = Depends(verifier)) -> AccountResponse:
        logger.info(f"Account requested by {user.id or '-'}")
        account = manager.new_account(body.email)
        return AccountResponse(id=account.id, email=account.email)

    @router.post("/certificates", status_code=status.HTTP_201_CREATED, response_model=CertificateResponse)
    def create_certificate(body: CertificateRequest, user: UserClaims = Depends(verifier)) -> CertificateResponse:
        logger.info(f"Certificate for {', '.join(body.domains)} requested by {user.id or '-'}")
        account = manager.get_account(body.account_id)
        config = CertificateConfig(challenge_type=body.challenge_type, dns_provider=body.dns_provider)
        certificate = manager.new_certificate(body.domains, account, config)
        return CertificateResponse.from_certificate(certificate)

    @router.get("/certificates/{certificate_id}", response_model=CertificateResponse)
    def get_certificate(certificate_id: str) -> CertificateResponse:
        return CertificateResponse.from_certificate(manager.get_certificate(certificate_id))

    @router.get("/certificates/{certificate_id}/chain")
    def get_certificate_chain(certificate_id: str) -> Response:
        return Response(content=manager.read_certificate_chain(certificate_id), media_type=PEM_CONTENT_TYPE)

    app.include_router(router)
    return app
