from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from researchflow.api.routes import research
from researchflow.config import settings
from researchflow.services.env_safety import sanitize_ssl_keylogfile
from researchflow.services.logger import logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    sanitize_ssl_keylogfile()
    if not (settings.llm_configured and settings.search_configured):
        logger.warning("Research providers are not fully configured; POST /api/research will return 503")
    yield
    # Shutdown


app = FastAPI(
    title="researchflow",
    description="Iterative research over dependency-aware sub-questions",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "researchflow"}
