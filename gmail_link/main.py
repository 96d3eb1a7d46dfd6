import logging
import time
import uuid
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from gmail_link.core.config import settings
from gmail_link.core.errors import CredentialError
from gmail_link.core.logging import setup_logging, set_request_id
from gmail_link.db.models import Base
from gmail_link.db.session import engine
from gmail_link.deps import get_state_cache
from gmail_link.routers import accounts, health, oauth
from gmail_link.services.crypto import get_fernet

# fail fast on a missing or malformed key
get_fernet()
setup_logging(settings.LOG_DIR, settings.LOG_LEVEL)

logger = logging.getLogger(__name__)

app = FastAPI(title="Gmail Link", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        set_request_id(rid)
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = int((time.perf_counter() - start) * 1000)
        client = request.client.host if request.client else "-"
        # path only: query strings carry authorization codes and state
        logging.getLogger("gmail_link.request").info(
            f"{client} {request.method} {request.url.path} {response.status_code} {dur_ms}ms",
            extra={"method": request.method, "path": str(request.url.path), "status": response.status_code, "dur_ms": dur_ms},
        )
        response.headers["X-Request-ID"] = rid
        return response

app.add_middleware(RequestIdMiddleware)

@app.exception_handler(CredentialError)
async def credential_error_handler(request: Request, exc: CredentialError):
    level = logging.ERROR if exc.status_code >= 500 and not exc.retryable else logging.INFO
    logger.log(level, "%s: %s", exc.code, exc, extra={"path": str(request.url.path)})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

app.include_router(health.router)
app.include_router(oauth.router)
app.include_router(accounts.router)

@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    get_state_cache().sweep_expired()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("gmail_link.main:app", host="0.0.0.0", port=8000, reload=True)
