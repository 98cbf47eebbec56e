"""Monitoring endpoint exposing Prometheus metrics."""
from __future__ import annotations

from fastapi import APIRouter, Request, Response

router = APIRouter(tags=["monitoring"])


@router.get("/metrics", include_in_schema=False)
async def prometheus_metrics(request: Request) -> Response:
    metrics = request.app.state.metrics
    return Response(content=metrics.export_prometheus(), media_type=metrics.prometheus_content_type)
