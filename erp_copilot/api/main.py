"""
FastAPI application entry-point.
"""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from erp_copilot.api.routers import entities, query
from erp_copilot.core.config import get_settings

app = FastAPI(
    title="ERP Analytics Copilot",
    version="0.1.0",
    description="Read-only ERP analytics with grounded natural-language answers",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(query.router, prefix="/query", tags=["Copilot"])
app.include_router(entities.router, prefix="/entities", tags=["Catalog"])


@app.get("/health")
def health():
    return {"status": "ok"}


def run() -> None:
    """Serve the API with uvicorn on the configured port."""
    import uvicorn

    uvicorn.run("erp_copilot.api.main:app", host="0.0.0.0", port=get_settings().api_port)


if __name__ == "__main__":
    run()
