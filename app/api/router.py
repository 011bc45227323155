# app/api/router.py
from fastapi import APIRouter
from app.api import (
    routes_requisitions,
    routes_receiving,
)

api_router = APIRouter()

# Inter-warehouse requisitions / delivery notes
api_router.include_router(routes_requisitions.router)

# Receiving sessions
api_router.include_router(routes_receiving.router)
