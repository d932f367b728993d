"""
FastAPI application for the conversation simulation engine.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI

# Configure logging to show INFO from convsim modules
logging.basicConfig(level=logging.INFO, format="%(name)s - %(levelname)s - %(message)s")
logging.getLogger("convsim").setLevel(logging.INFO)
from fastapi.middleware.cors import CORSMiddleware

from .routes import router

app = FastAPI(
    title="ConvSim",
    description="Difficult-conversation roleplay engine with phased branching and persona mood",
    version="0.1.0",
)

# CORS for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(router)


@app.get("/")
async def root():
    return {"message": "ConvSim API", "docs": "/docs"}
