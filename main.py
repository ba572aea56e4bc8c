import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import LOG_LEVEL
from app.api.v1.api import api_router
from app.api.v1.endpoints.mail import get_orchestrator
from app.database import engine, Base
from app.models import MailToken, MailSync, MailMessage  # noqa: F401 - registers tables
from app.services.sync_service import resume_stale_syncs

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Mailbox Sync",
    description="Resumable Gmail mailbox synchronization",
    version="1.0.0"
)

origins = [
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Create database tables and resume syncs cut short by the last shutdown."""
    Base.metadata.create_all(bind=engine)
    logger.info("✅ Database tables created/verified")
    resume_stale_syncs(get_orchestrator())


app.include_router(api_router)


@app.get("/")
def health_check():
    return {"status": "ok"}
