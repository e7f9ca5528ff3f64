from contextlib import asynccontextmanager
import logging
import secrets

from fastapi import APIRouter, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.security import HTTPBasic, HTTPBasicCredentials
import uvicorn

from siwe_auth.api.endpoints import auth, health
from siwe_auth.core.config import settings
from siwe_auth.core.dependencies import get_name_resolver
from siwe_auth.db.session import init_db

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Sign-in service ready for domains: %s", settings.ALLOWED_DOMAINS)
    yield
    resolver = get_name_resolver()
    if resolver is not None:
        resolver.close()


def require_doc_password(credentials: HTTPBasicCredentials = Depends(HTTPBasic())) -> str:
    """API docs stay closed unless DOC_PASSWORD is set and matches."""
    expected = settings.DOC_PASSWORD
    if not expected or not secrets.compare_digest(credentials.password, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect password",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username


docs_router = APIRouter(include_in_schema=False, dependencies=[Depends(require_doc_password)])


@docs_router.get("/docs")
async def swagger_docs():
    return get_swagger_ui_html(openapi_url="/openapi.json", title=f"{settings.PROJECT_NAME} docs")


@docs_router.get("/redoc")
async def redoc_docs():
    return get_redoc_html(openapi_url="/openapi.json", title=f"{settings.PROJECT_NAME} docs")


@docs_router.get("/openapi.json")
async def openapi_schema():
    return get_openapi(title=app.title, version=app.version, routes=app.routes)


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(docs_router)
app.include_router(health.router)
app.include_router(auth.router, prefix="/auth")


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        ssl_keyfile=settings.SSL_KEY,
        ssl_certfile=settings.SSL_CERT,
        reload=settings.DEBUG,
    )
