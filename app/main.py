import logging

from fastapi import FastAPI

from app.monetization_api import monetization_router
from app.settings import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Monetization Agent", version="0.1.0")
app.include_router(monetization_router)


@app.get("/health")
def health():
    return {"status": "ok"}
