import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from .config import settings
from .errors import DomainError
from .redis_client import redis_client
from .routers import availability_exceptions, bookings, capacity, integrations, slots

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Booking Engine API")

app.include_router(bookings.router)
app.include_router(slots.router)
app.include_router(capacity.router)
app.include_router(availability_exceptions.router)
app.include_router(integrations.router)


@app.exception_handler(DomainError)
def domain_error_handler(request: Request, exc: DomainError):
    logger.warning(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
def health():
    try:
        redis_ok = bool(redis_client.ping())
    except RedisError:
        redis_ok = False
    return {"status": "ok", "redis": redis_ok}
