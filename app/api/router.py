from fastapi import APIRouter
from app.api.endpoints import questions

api_router = APIRouter(prefix="/api")

# Combine all sub-routers into one
api_router.include_router(questions.router)
