"""FastAPI REST API server for the notification sync service.

This module exposes the sync engine to the app shell: sync triggers
(app foreground/resume), notification responses, manual snooze, token
registration and read-only views of the device schedule.

IMPORTANT: Pydantic automatically converts ISO datetime strings to datetime objects.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

import background_worker
import crud
import schemas
from config import settings
from device import LocalNotificationScheduler, SchedulerError
from dispatcher import REMINDER_ID_PATTERN
from engine import NotificationEngine, build_engine
from logger_config import setup_logger

logger = setup_logger(__name__, 'api.log')

SERVICE_NAME = "Reminder Notification Sync API"
SERVICE_VERSION = "1.0.0"


def create_app(engine: Optional[NotificationEngine] = None, start_worker: Optional[bool] = None) -> FastAPI:
    """Create the API application.

    Args:
        engine: Prebuilt engine (tests); built from settings when omitted
        start_worker: Run the background worker inside the app (defaults to WORKER_ENABLED)
    """
    run_worker = settings.WORKER_ENABLED if start_worker is None else start_worker

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.engine = engine or build_engine()
        logger.info(f"{SERVICE_NAME} started for device {app.state.engine.reconciler.device_id}")
        worker_task = None
        if run_worker:
            background_worker.shutdown_requested = False
            worker_task = asyncio.create_task(background_worker.worker_loop(app.state.engine))
        try:
            yield
        finally:
            if worker_task is not None:
                background_worker.request_shutdown()
                worker_task.cancel()
                try:
                    await worker_task
                except asyncio.CancelledError:
                    pass

    app = FastAPI(
        title=SERVICE_NAME,
        description="Keeps device-local reminder notifications in sync with the remote reminder store",
        version=SERVICE_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # The app shell runs on the same machine
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:8081", "http://localhost:19006"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_routes(app)
    return app


def get_engine(request: Request) -> NotificationEngine:
    return request.app.state.engine


def _register_routes(app: FastAPI):

    @app.get("/")
    def root():
        """Root endpoint - service information"""
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "status": "healthy",
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "sync": "/sync",
                "schedules": "/schedules"
            }
        }

    @app.get("/health")
    def health_check(engine: NotificationEngine = Depends(get_engine)):
        """Health check endpoint for monitoring"""
        return {
            "status": "healthy",
            "service": "notification_sync",
            "database": settings.DATABASE_URL.split("://")[0],
            "device_id": engine.reconciler.device_id,
            "sync_running": engine.reconciler.is_running
        }

    @app.post("/sync")
    async def trigger_sync(
        trigger: str = Query("foreground", max_length=50, description="What caused the sync"),
        engine: NotificationEngine = Depends(get_engine)
    ):
        """Run a reconciliation pass now (app foreground/resume).

        Returns the pass report, or status 'skipped' if a pass was already running.
        """
        report = await engine.reconciler.reconcile(trigger=trigger)
        if report is None:
            return {"status": "skipped", "trigger": trigger}
        return {"status": "aborted" if report.aborted else "completed", "report": report}

    @app.get("/schedules", response_model=List[schemas.ScheduleRecordResponse])
    def list_schedules(engine: NotificationEngine = Depends(get_engine)):
        """Persisted schedule records for this user and device."""
        reconciler = engine.reconciler
        db = reconciler.session_factory()
        try:
            records = crud.get_schedules_for_device(db, reconciler.user_id, reconciler.device_id)
            return [schemas.ScheduleRecordResponse.model_validate(r) for r in records]
        finally:
            db.close()

    @app.get("/notifications/scheduled", response_model=List[schemas.NotificationRequest])
    async def list_scheduled_notifications(engine: NotificationEngine = Depends(get_engine)):
        """Notifications currently pending on the device scheduler."""
        try:
            return await engine.scheduler.list_scheduled()
        except SchedulerError as e:
            raise HTTPException(status_code=502, detail=f"Scheduler unavailable: {str(e)}")

    @app.post("/notifications/response", response_model=schemas.DispatchResult)
    async def notification_response(
        response: schemas.NotificationResponse,
        engine: NotificationEngine = Depends(get_engine)
    ):
        """Handle a tap or button press on a delivered notification.

        Request body example:
        ```json
        {
            "action_identifier": "snooze_3f2a...",
            "request_identifier": "c0ffee...",
            "content": {"title": "Call mom", "body": "Reminder is due!",
                        "data": {"reminderId": "3f2a...", "defaultSnoozeMinutes": 10}}
        }
        ```
        """
        scheduler = engine.scheduler
        if isinstance(scheduler, LocalNotificationScheduler):
            results = await scheduler.respond(response)
            if results:
                return results[0]
        return await engine.dispatcher.handle(response)

    @app.post("/notifications/received")
    async def notification_received(
        content: schemas.NotificationContent,
        engine: NotificationEngine = Depends(get_engine)
    ):
        """Hand a push delivered to this device to the received listeners.

        A data payload of {"type": "resync"} starts a background sync.
        """
        scheduler = engine.scheduler
        if not isinstance(scheduler, LocalNotificationScheduler):
            raise HTTPException(status_code=501, detail="Scheduler receives pushes natively")
        results = await scheduler.receive(content)
        return {"accepted": True, "resync": any(result is not None for result in results)}

    @app.post("/reminders/{reminder_id}/snooze", response_model=schemas.DispatchResult)
    async def snooze_reminder(
        reminder_id: str,
        minutes: Optional[float] = Query(None, description="Minutes to snooze (defaults to DEFAULT_SNOOZE_MINUTES)"),
        engine: NotificationEngine = Depends(get_engine)
    ):
        """Snooze a reminder from the app (manual snooze)."""
        if not REMINDER_ID_PATTERN.match(reminder_id):
            raise HTTPException(status_code=400, detail="Invalid reminder id")
        try:
            return await engine.dispatcher.apply_snooze(reminder_id, minutes)
        except SchedulerError as e:
            raise HTTPException(status_code=502, detail=f"Could not snooze reminder: {str(e)}")

    @app.post("/tokens/register")
    async def register_token(engine: NotificationEngine = Depends(get_engine)):
        """Request permission, obtain the push token and save it."""
        registration = await engine.registrar.initialize()
        if registration is None:
            return {"registered": False}
        return {"registered": True, "token": registration.token, "token_type": registration.token_type}

    @app.delete("/tokens/{token}")
    async def remove_token(token: str, engine: NotificationEngine = Depends(get_engine)):
        """Delete a push token of this user (sign-out or token rotation)."""
        return {"removed": await engine.registrar.remove_token(token)}


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
