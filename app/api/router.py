# app/api/router.py
from fastapi import APIRouter

from app.api import (
    routes_billing,
    routes_ipd,
)

api_router = APIRouter()

api_router.include_router(routes_ipd.router)
api_router.include_router(routes_billing.router)
