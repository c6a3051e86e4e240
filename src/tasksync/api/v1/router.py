"""V1 API router -- aggregates all endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.tasksync.api.v1 import health, jobs, logs, poll, resolve, subscriptions, webhooks

router = APIRouter()

router.include_router(health.router)
router.include_router(webhooks.router)
router.include_router(jobs.router)
router.include_router(subscriptions.router)
router.include_router(poll.router)
router.include_router(resolve.router)
router.include_router(logs.router)
