"""
GET /
Service banner for humans poking at the backend root.
"""
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def home():
    return {
        "status": "online",
        "message": "CI/CD Pipeline Backend is Running \U0001f680",
        "documentation": "/docs",
    }
