from fastapi import FastAPI

from wellcoach.api.jobs import router as jobs_router
from wellcoach.api.notifications import router as notifications_router
from wellcoach.core.logging import configure_logging
from wellcoach.db.session import create_tables

app = FastAPI(title="Wellcoach")


@app.on_event("startup")
def on_startup() -> None:
    configure_logging()
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Wellcoach API", "status": "ok"}


app.include_router(jobs_router)
app.include_router(notifications_router)
