import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings
from app.errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStock,
    NotFoundError,
    ValidationError,
)
from app.responses import error_response, success_response
from app.routers import admin, auth, inventory, reports, stock_count
from app.security.headers import install_security_headers
from app.security.sessions import install_auth_session_middleware

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title='Stock Ledger')

install_security_headers(app)
install_auth_session_middleware(app)

app.include_router(auth.router)
app.include_router(inventory.router)
app.include_router(reports.router)
app.include_router(stock_count.router)
app.include_router(admin.router)

HTTP_ERROR_CODES = {
    401: ('Unauthorized', 'UNAUTHORIZED'),
    403: ('Forbidden', 'FORBIDDEN'),
    404: ('Not Found', 'NOT_FOUND'),
}


@app.exception_handler(ValidationError)
def handle_validation_error(request: Request, exc: ValidationError):
    return error_response(str(exc), 400, exc.code)


@app.exception_handler(RequestValidationError)
def handle_request_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
    message = f'{field}: {first.get("msg")}' if field else 'Invalid request'
    return error_response(message, 400, ValidationError.code)


@app.exception_handler(InsufficientStock)
def handle_insufficient_stock(request: Request, exc: InsufficientStock):
    return error_response(
        str(exc),
        409,
        exc.code,
        material_reference=exc.material_reference,
        available=exc.available,
        requested=exc.requested,
    )


@app.exception_handler(AuthorizationError)
def handle_authorization_error(request: Request, exc: AuthorizationError):
    return error_response('Forbidden', 403, exc.code)


@app.exception_handler(NotFoundError)
def handle_not_found(request: Request, exc: NotFoundError):
    return error_response('Not Found', 404, exc.code)


@app.exception_handler(ConflictError)
def handle_conflict(request: Request, exc: ConflictError):
    return error_response(str(exc), 409, exc.code)


@app.exception_handler(StarletteHTTPException)
def handle_http_exception(request: Request, exc: StarletteHTTPException):
    message, code = HTTP_ERROR_CODES.get(exc.status_code, (str(exc.detail), None))
    return error_response(message, exc.status_code, code)


@app.exception_handler(Exception)
def handle_unexpected(request: Request, exc: Exception):
    logger.exception('Unhandled error on %s %s', request.method, request.url.path)
    return error_response('Internal Server Error', 500, 'INTERNAL_ERROR')


@app.get('/health')
def health():
    return success_response({'status': 'ok'})


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
