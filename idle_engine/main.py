import logging

from dotenv import load_dotenv
from fastapi import FastAPI

from idle_engine.api.routes import router

# Local runs pick up REDIS_URL / IDLE_ENGINE_* from .env; real env vars win.
load_dotenv(override=False)

app = FastAPI(title="idle-engine", version="0.1.0")
app.include_router(router)
# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@app.get("/info")
async def info() -> dict[str, str]:
    return {"name": "idle-engine", "version": "0.1.0"}
