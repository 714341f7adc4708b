from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from concierge_gateway import config
from concierge_gateway.api.v1.routes_agent import router as agent_router
from concierge_gateway.services.agent_upstream import AgentUpstream

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(upstream: Optional[AgentUpstream] = None) -> FastAPI:
    app = FastAPI(title="Concierge Agent Gateway")
    app.state.agent_upstream = upstream or AgentUpstream()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/__ping")
    async def ping():
        return {"ok": True}

    app.include_router(agent_router, prefix="/api/agent", tags=["agent"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "concierge_gateway.main:app",
        host=config.get_str_env("API_HOST", "0.0.0.0"),
        port=int(config.get_float_env("API_PORT", 8000)),
    )
