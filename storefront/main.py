import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .calendar_sync import CalendarSyncNotifier
from .config import (
    CLEANUP_INTERVAL_SECONDS,
    EVENTS_BACKEND,
    LOG_LEVEL,
    SCHEDULER_ENABLED,
    STOCK_RESTORE_MODE,
    UPLOAD_DIR,
)
from .database import SessionLocal
from .errors import StoreError
from .messaging import make_publisher
from .models import Base
from .restorers import select_stock_restorer
from .routers import activity_router, calendar_router, order_router, product_router, report_router
from .scheduler import PaymentDeadlineScheduler

logger = logging.getLogger(__name__)


def create_app(
    session_factory=None,
    publisher=None,
    calendar=None,
    restorer=None,
    scheduler_enabled: bool = SCHEDULER_ENABLED,
    upload_dir: str = UPLOAD_DIR,
) -> FastAPI:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    session_factory = session_factory or SessionLocal
    engine = session_factory.kw["bind"]
    publisher = publisher or make_publisher(EVENTS_BACKEND)
    calendar = calendar or CalendarSyncNotifier(session_factory)
    restorer = restorer or select_stock_restorer(engine, STOCK_RESTORE_MODE)

    app = FastAPI(
        title="Storefront Order Service",
        description="Order lifecycle, inventory and product locking for the storefront",
        version="1.0.0"
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.session_factory = session_factory
    app.state.publisher = publisher
    app.state.calendar = calendar
    app.state.restorer = restorer
    app.state.upload_dir = upload_dir
    app.state.scheduler = PaymentDeadlineScheduler(
        session_factory,
        restorer,
        publisher,
        interval_seconds=CLEANUP_INTERVAL_SECONDS,
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        content = {"success": False, "message": detail if isinstance(detail, str) else str(detail)}
        return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))

    # Include routers
    app.include_router(order_router.router)
    app.include_router(product_router.router)
    app.include_router(activity_router.router)
    app.include_router(calendar_router.router)
    app.include_router(report_router.router)

    @app.on_event("startup")
    def _startup() -> None:
        # Create database tables
        Base.metadata.create_all(bind=engine)
        if scheduler_enabled:
            # first sweep runs right away to catch deadlines missed while down
            app.state.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.scheduler.stop()

    @app.get("/")
    def root():
        return {
            "service": "Storefront Order Service",
            "status": "running",
            "version": "1.0.0"
        }

    @app.get("/health")
    def health_check():
        return {
            "status": "healthy",
            "service": "storefront-order-service"
        }

    return app


app = create_app()
