"""API v1 router."""

from fastapi import APIRouter

from deepsearch.api.v1 import chat

api_router = APIRouter()

api_router.include_router(chat.router, tags=["chat"])
