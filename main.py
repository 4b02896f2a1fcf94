# main.py
# --- NeuroGrid rental backend: app factory + treasury + routers ---

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import log_config
from config import settings
from database import Base, SessionLocal, engine, get_db
from errors import RentalError
from routes import deploy, miner, nodes, rentals, wallet
from schemas import TreasurySummary
from services import Services, build_services, get_services
from treasury import treasury_summary

logger = log_config.setup_logger(settings.LOG_LEVEL, settings.LOG_FILE)


def create_app(services: Services = None) -> FastAPI:
    if services is None:
        # Create DB tables (dev). For production use alembic migrations.
        Base.metadata.create_all(bind=engine)
        services = build_services(settings, SessionLocal)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.startup()
        yield
        services.shutdown()

    app = FastAPI(
        title="NeuroGrid API",
        version="1.0",
        description="GPU node rental: split payments, node assignment, miner intake",
        lifespan=lifespan,
    )
    app.state.services = services

    # ---------- CORS ----------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- ERRORS ----------
    @app.exception_handler(RentalError)
    def rental_error_handler(request: Request, exc: RentalError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/healthz", tags=["System"])
    def health_check():
        logger.info("Health check endpoint called successfully.")
        return {"status": "ok"}

    @app.get("/")
    def read_root():
        return {"message": "NeuroGrid Backend is Live ✅"}

    # =====================================================
    # ============== TREASURY =============================
    # =====================================================
    @app.get("/api/treasury", response_model=TreasurySummary, tags=["Treasury"])
    def get_treasury(db: Session = Depends(get_db), services: Services = Depends(get_services)):
        cfg = services.settings
        try:
            return treasury_summary(
                db, cfg.TREASURY_WALLET, cfg.TOKEN_MINT, cfg.NETWORK, cfg.PROTOCOL_FEE_BPS, cfg.TOKEN_DECIMALS
            )
        except SQLAlchemyError:
            logger.exception("Treasury fetch failed")
            return JSONResponse(status_code=500, content={"error": "Treasury fetch failed"})

    app.include_router(nodes.router)
    app.include_router(rentals.router)
    app.include_router(deploy.router)
    app.include_router(miner.router)
    app.include_router(wallet.router)

    # =====================================================
    # ============== SWAGGER SECURITY =====================
    # =====================================================
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=app.title, version=app.version, description=app.description, routes=app.routes)
        schema.setdefault("components", {}).setdefault("securitySchemes", {})["HTTPBearer"] = {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
        schema["security"] = [{"HTTPBearer": []}]
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
