from fastapi import FastAPI
from .routes import router as api_router
from .logging_setup import configure_logging
from . import cache, db
import logging

# configure file logging for the app
configure_logging()
logger = logging.getLogger("ridedispatch.main")

app = FastAPI(title="Ride Dispatch - Driver Ranking and Dispatch Engine")

app.include_router(api_router, prefix="/v1")


@app.on_event("startup")
async def _startup():
    logger.info("Starting ride dispatch service")
    await db.init_db()


@app.on_event("shutdown")
async def _shutdown():
    await db.engine.dispose()
    await cache.close()
    logger.info("Stopped ride dispatch service")


@app.get("/")
async def read_root():
    return {"message": "Ride Dispatch API"}


@app.get("/health")
async def health_check():
    return {"status": "ok", "redis": await cache.ping()}


def run():
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)


if __name__ == "__main__":
    run()
