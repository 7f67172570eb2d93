from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .ai_judge import GeminiJudge
from .certificate import TlsCertificateAdapter
from .config import AnalysisConfig
from .errors import AllSignalsFailed, ValidationError
from .explain import explain
from .logs import configure_logging
from .models import SIGNAL_ORDER, AnalysisRequest, AnalyzeRequest, AnalyzeResponse, Signal
from .orchestrator import AnalysisOrchestrator
from .registration import RdapAdapter
from .reputation import SafeBrowsingAdapter
from .urls import hostname_of, normalize_url

# Repo-root .env so API keys work in local dev.
_HERE = Path(__file__).resolve()
load_dotenv(_HERE.parents[1] / ".env", override=False)

logger = structlog.get_logger(__name__)


def build_orchestrator(config: AnalysisConfig | None = None) -> AnalysisOrchestrator:
    config = config or AnalysisConfig.from_env()
    adapters = {
        Signal.REPUTATION: SafeBrowsingAdapter(),
        Signal.REGISTRATION: RdapAdapter(),
        Signal.CERTIFICATE: TlsCertificateAdapter(),
        Signal.AI_CONTENT: GeminiJudge(),
    }
    return AnalysisOrchestrator(adapters, config=config)


def _cors_allow_origins() -> list[str]:
    raw = os.getenv("TRUSTSCORE_CORS_ORIGINS", "").strip()
    if not raw:
        return ["http://localhost:3000"]
    return [o.strip() for o in raw.split(",") if o.strip()]


def _orchestrator(request: Request) -> AnalysisOrchestrator:
    return request.app.state.orchestrator


def create_app(orchestrator: AnalysisOrchestrator | None = None) -> FastAPI:
    """The HTTP surface. A given orchestrator is used as is and left open on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        owned = orchestrator is None
        app.state.orchestrator = orchestrator or build_orchestrator()
        config = app.state.orchestrator.config
        logger.info("agent_started", workers=config.max_workers)
        app.state.warmer = None
        if config.warm_subjects:
            app.state.warmer = app.state.orchestrator.start_warming(
                [normalize_url(s) for s in config.warm_subjects], interval_s=config.warm_interval_s
            )
        try:
            yield
        finally:
            if owned:
                app.state.orchestrator.close()

    app = FastAPI(title="TrustScore Agent", version="0.1.0", lifespan=lifespan)

    # Defaults to http://localhost:3000; set TRUSTSCORE_CORS_ORIGINS in production.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_allow_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/analyze", response_model=AnalyzeResponse)
    def analyze_endpoint(req: AnalyzeRequest, request: Request):
        started = time.perf_counter()
        try:
            url = normalize_url(req.url)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

        analysis = AnalysisRequest(
            subject=url,
            timeouts={signal: ms / 1000 for signal, ms in req.timeouts_ms.items()},
            deadline_s=req.deadline_ms / 1000 if req.deadline_ms else None,
            force_refresh=req.force_refresh,
        )
        try:
            result = _orchestrator(request).analyze(analysis)
        except AllSignalsFailed as e:
            raise HTTPException(
                status_code=503,
                detail={
                    "message": "No signal could be evaluated. Please retry.",
                    "failures": {s.value: f.model_dump(mode="json") for s, f in e.failures.items()},
                },
                headers={"Retry-After": "2" if e.retryable else "30"},
            )

        warnings = [
            f"{signal.value} check failed ({result.signals[signal].kind.value})"
            for signal in SIGNAL_ORDER
            if signal in result.failed_signals
        ]
        if result.score_capped:
            warnings.append("score capped by a confirmed threat-list match")

        return AnalyzeResponse(
            normalized_url=url,
            hostname=hostname_of(url),
            result=result,
            explanation=explain(result),
            analyzed_at=datetime.now(timezone.utc).isoformat(),
            timings_ms={"total": int((time.perf_counter() - started) * 1000)},
            warnings=warnings,
        )

    @app.get("/stats")
    def stats_endpoint(request: Request):
        return _orchestrator(request).stats()

    @app.delete("/cache")
    def clear_cache(request: Request):
        return {"cleared": _orchestrator(request).clear_cache(), "signals": [s.value for s in SIGNAL_ORDER]}

    @app.delete("/cache/{signal}")
    def clear_signal_cache(signal: Signal, request: Request):
        return {"cleared": _orchestrator(request).clear_cache(signal), "signals": [signal.value]}

    return app


app = create_app()
