from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import uvicorn
import logging

import config
config.setup_logging()

from match_registry import MatchRegistry

logger = logging.getLogger(__name__)


def _allowed_origins() -> list[str]:
    if config.ALLOWED_ORIGINS.strip():
        return [o.strip() for o in config.ALLOWED_ORIGINS.split(",")]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Flag Duel backend")
    registry = MatchRegistry.create()
    registry.allowed_origins = _allowed_origins()
    app.state.registry = registry
    yield
    logger.info("Shutting down Flag Duel backend")
    await registry.shutdown()


app = FastAPI(title="Flag Duel Backend", lifespan=lifespan)


@app.websocket("/ws/{client_id}")
async def websocket_endpoint(websocket: WebSocket, client_id: str,
                             identity: str = "", name: str = ""):
    registry: MatchRegistry = websocket.app.state.registry
    await registry.connect(websocket, client_id, identity=identity, display_name=name)


# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins() or ["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=False,
    allow_methods=["GET"],
    allow_headers=["Content-Type"],
)


@app.get("/")
async def root():
    return {"message": "Flag Duel API is running"}


@app.get("/health")
async def health(request: Request):
    registry: MatchRegistry = request.app.state.registry
    status = "healthy" if registry.available else "unavailable"
    return {"status": status, **registry.stats()}


if __name__ == "__main__":
    uvicorn.run("main:app", host=config.HOST, port=config.PORT, reload=True)
