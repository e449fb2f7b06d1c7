import logging
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pymongo.errors import PyMongoError

import account
import auth
import cart
import catalog
import checkout
import config
import database
from errors import register_error_handlers

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    database.ensure_indexes()
    logger.info("API started in %s mode", config.APP_ENV)
    yield


app = FastAPI(title="E-Commerce API", lifespan=lifespan, dependencies=[Depends(auth.authorize)])

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

if config.is_development():
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - started) * 1000
        logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed)
        return response

app.include_router(auth.router)
app.include_router(account.router)
app.include_router(catalog.router)
app.include_router(cart.router)
app.include_router(checkout.router)
app.include_router(checkout.webhook_router)

app.mount("/uploads", StaticFiles(directory=config.UPLOADS_DIR, check_dir=False), name="uploads")


COLLECTIONS = ["user", "category", "subcategory", "brand", "product", "review", "coupon", "cart", "order"]


@app.get("/")
def read_root():
    return {"message": "E-Commerce Backend Ready"}


@app.get("/schema")
def get_schema():
    """Collection names, for the database viewer."""
    return {"collections": COLLECTIONS}


@app.get("/test")
def test_database():
    report = {
        "backend": "running",
        "environment": config.APP_ENV,
        "database_name": config.DATABASE_NAME,
        "database": "not initialized",
        "stripe": "configured" if config.STRIPE_SECRET_KEY else "missing STRIPE_SECRET_KEY",
        "collections": [],
    }
    if database.db is None:
        return report
    try:
        database.db.command("ping")
        report["collections"] = sorted(database.db.list_collection_names())
        report["database"] = "connected"
    except PyMongoError as exc:
        logger.warning("Database check failed: %s", exc)
        report["database"] = f"error: {str(exc)[:80]}"
    return report


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=config.PORT, reload=config.is_development())
