# attendance_monitor/main.py
from fastapi import FastAPI

from attendance_monitor.api.routes import attendance, health, meetings, notifications, realtime
from attendance_monitor.core.config import get_settings
from attendance_monitor.core.logging import setup_logging
from attendance_monitor.db.session import AsyncSessionLocal, init_db
from attendance_monitor.services.attendance_tracker import AttendanceTracker
from attendance_monitor.services.kv_store import KeyValueStore, SqlKeyValueStore
from attendance_monitor.services.realtime_channel import RealtimeTransport


def create_app(
    store: KeyValueStore | None = None,
    transport: RealtimeTransport | None = None,
) -> FastAPI:
    """
    Application factory for the Attendance Monitor service.

    ``store`` and ``transport`` override the SQL-backed store and the
    settings-derived realtime transport (used by tests).
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Tracks meeting participants in real time, classifies their attendance,\n"
            "surfaces filtered notifications and keeps a local-first attendance store\n"
            "that is synced to the school backend when it is reachable."
        ),
        version="0.1.0",
    )

    # Routers
    app.include_router(health.router)
    app.include_router(meetings.router)
    app.include_router(realtime.router)
    app.include_router(notifications.router)
    app.include_router(attendance.router)

    @app.on_event("startup")
    async def on_startup() -> None:
        kv_store = store
        if kv_store is None:
            await init_db()
            kv_store = SqlKeyValueStore(AsyncSessionLocal)
        tracker = AttendanceTracker.from_settings(settings, store=kv_store, transport=transport)
        await tracker.start()
        app.state.tracker = tracker

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        tracker = getattr(app.state, "tracker", None)
        if tracker is not None:
            await tracker.close()
            app.state.tracker = None

    return app


app = create_app()
