# server.py
# Run with: uvicorn server:create_app --factory
import html
import hmac
import logging
from typing import Optional

import httpx
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import AliasChoices, BaseModel, Field

from config import Settings
from errors import QueueError, RemoteAPIError, ValidationError
from models import to_iso, utcnow
from storage import Storage
from worker import build_worker

logger = logging.getLogger(__name__)


class ScheduleRequest(BaseModel):
    image_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("image_url", "imageUrl"))
    caption: Optional[str] = None
    publish_at: Optional[str] = Field(default=None, validation_alias=AliasChoices("publish_at", "publishAt"))


class PostRequest(BaseModel):
    image_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("image_url", "imageUrl"))
    caption: Optional[str] = None


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head><title>{title}</title><style>{BASE_STYLE}</style></head>
    <body>
      <h1>{title}</h1>
      <div class="container">{body_html}</div>
    </body>
    </html>
    """


def publish_failure(exc, creation_id=None):
    """Status and body for a failed immediate publish; Graph 4xx/5xx pass through."""
    status = 500
    details = {"message": str(exc)}
    if isinstance(exc, RemoteAPIError):
        if exc.status_code is not None and 400 <= exc.status_code < 600:
            status = exc.status_code
        details = {"message": exc.message, "code": exc.code, "subcode": exc.subcode}
    if creation_id:
        details["creation_id"] = creation_id
    return JSONResponse(status_code=status, content={
        "ok": False, "error": "publish_failed", "details": details,
    })


def create_app(store=None, worker=None, cron_key=None, settings=None) -> FastAPI:
    """Build the app. Without an explicit worker one is wired from settings,
    which then must carry Instagram credentials (ConfigError otherwise)."""
    settings = settings if settings is not None else Settings()
    if store is None:
        store = Storage(settings.db_path)
    if worker is None:
        if isinstance(store, Storage):
            settings = Settings.load(store, base=settings)
        worker = build_worker(store, settings)
    if cron_key is None:
        cron_key = settings.cron_key

    app = FastAPI(title="Publishing queue")
    app.state.store = store
    app.state.worker = worker
    app.state.settings = settings

    def authorized(header_value):
        if not cron_key:
            return True
        return hmac.compare_digest((header_value or "").encode(), cron_key.encode())

    def unauthorized():
        return JSONResponse(status_code=401, content={"ok": False, "error": "unauthorized"})

    @app.exception_handler(ValidationError)
    async def validation_error(_request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"ok": False, "error": str(exc)})

    # ---------- Health ----------
    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/schedule/ping")
    def schedule_ping():
        return {"status": "schedule ok"}

    @app.get("/posts/ping")
    def posts_ping():
        return {"ok": True, "now": to_iso(utcnow())}

    @app.get("/ads/ping")
    def ads_ping():
        return {"status": "ads ok"}

    @app.get("/instagram/ping")
    def instagram_ping():
        try:
            profile = worker.workflow.client.get_profile()
        except (RemoteAPIError, httpx.HTTPError) as e:
            logger.warning("Instagram profile check failed: %s", e)
            return JSONResponse(status_code=500, content={"ok": False, "error": "Instagram API error"})
        return {"ok": True, "profile": profile}

    # ---------- Enqueue ----------
    @app.post("/schedule", status_code=201)
    def schedule(body: ScheduleRequest):
        result = store.enqueue(body.image_url, body.caption, body.publish_at)
        if not result.queued:
            return JSONResponse(status_code=200, content={
                "ok": True, "queued": False, "duplicate": True, "key": result.key,
            })
        return {"ok": True, "queued": True, "key": result.key}

    # ---------- Immediate publish ----------
    @app.post("/posts/create")
    def create_post(body: PostRequest, x_cron_key: Optional[str] = Header(default=None)):
        if not authorized(x_cron_key):
            return unauthorized()
        if not body.image_url or not body.image_url.strip():
            return JSONResponse(status_code=400, content={"ok": False, "error": "missing_image_url"})

        workflow = worker.workflow
        artifact = None
        try:
            artifact = workflow.create_container(body.image_url, body.caption or "")
            workflow.wait_until_ready(artifact)
            media_id = workflow.finalize(artifact)
        except (QueueError, httpx.HTTPError) as e:
            logger.error("Immediate publish of %s failed: %s", body.image_url, e)
            return publish_failure(e, artifact.creation_id if artifact else None)
        return {"ok": True, "media_id": media_id, "creation_id": artifact.creation_id}

    # ---------- Tick ----------
    @app.post("/schedule/run")
    def run(x_cron_key: Optional[str] = Header(default=None)):
        if not authorized(x_cron_key):
            return unauthorized()
        result = worker.run()
        if result.running:
            return JSONResponse(status_code=202, content={"ok": True, "running": True})
        return {"ok": True, **result.to_dict()}

    # ---------- Jobs ----------
    @app.get("/schedule/jobs")
    def list_jobs(status: Optional[str] = None, limit: int = 100):
        return {"jobs": [job.to_dict() for job in store.list_jobs(status=status, limit=limit)]}

    @app.get("/schedule/jobs/{key}")
    def job_detail(key: str):
        job = store.get(key)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {key} not found")
        return job.to_dict()

    @app.get("/metrics/json")
    def metrics_json():
        return store.counts()

    # ---------- Home ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        jobs = store.list_jobs()[-50:]
        rows = "".join(
            f"<tr><td>{j.key[:12]}</td><td>{html.escape(j.artifact_ref)}</td><td>{j.status}</td>"
            f"<td>{j.attempts}</td><td>{j.publish_at}</td><td>{html.escape(j.last_error or '-')}</td></tr>"
            for j in reversed(jobs)
        )
        body = f"""
          <table>
            <tr><th>Key</th><th>Image</th><th>Status</th><th>Attempts</th><th>Publish at</th><th>Last error</th></tr>
            {rows}
          </table>
        """
        if not jobs:
            body += "<p class='muted'>No jobs scheduled.</p>"
        return page("📅 Scheduled posts", body)

    return app
