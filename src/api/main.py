"""
FastAPI application entry-point.
"""
from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.routers import catalog, widgets

app = FastAPI(
    title="Widget Query Engine",
    version="0.1.0",
    description="Compiles dashboard widget configs into query parameters and chart-ready data",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(widgets.router, prefix="/widgets", tags=["Widgets"])
app.include_router(catalog.router, tags=["Catalog"])


@app.get("/health")
def health():
    return {"status": "ok"}
