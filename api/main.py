"""
FastAPI Web Service for the Reading Strategy Bandit

Provides RESTful endpoints for:
- Choosing a recommendation strategy for a reading context
- Recording impressions and user actions (reward attribution)
- Model management, statistics and monitoring
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, field_validator

from categories import ACTION_CATEGORIES
from config.logging_config import configure_logging
from config.settings import get_settings
from models.exceptions import ComputationError, PersistenceError
from services.observer import CompositeObserver, LoggingObserver, MetricsObserver
from services.recommendation_engine import BanditRecommendationEngine

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Reading Strategy Bandit API",
    description="Contextual bandit selection of book recommendation strategies",
    version="1.0.0"
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global recommendation engine instance
recommendation_engine = None
event_metrics = None


# Pydantic models for request/response
class ReadingContext(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mood: Optional[str] = Field(None, description="Current mood (curious, relaxed, ...)")
    situation: Optional[str] = Field(None, description="Reading situation (commuting, before_bed, ...)")
    goal: Optional[str] = Field(None, description="Reading goal (learning, escape, ...)")
    time_of_day: Optional[str] = Field(None, alias="timeOfDay", description="morning/afternoon/evening/night")
    day_of_week: Optional[Union[int, str]] = Field(None, alias="dayOfWeek", description="0 = Sunday or a day name")
    custom_text: Optional[str] = Field(None, alias="customText", description="Free text, not encoded")

    def to_context(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class StrategyRequest(BaseModel):
    identity: str = Field(..., min_length=1, description="User id or anonymous session id")
    context: ReadingContext = Field(default_factory=ReadingContext)
    user_features: Optional[Dict[str, Any]] = Field(None, description="Optional history summary")
    timestamp: Optional[datetime] = Field(None, description="Request time, defaults to now")


class StrategyResponse(BaseModel):
    arm_id: str
    arm_name: str
    predicted_reward: float
    exploration_bonus: float
    confidence: float
    exploration_level: float
    explanation: str
    fallback: bool
    timestamp: datetime


class ImpressionRequest(BaseModel):
    identity: str = Field(..., min_length=1)
    book_id: str = Field(..., min_length=1)
    context: ReadingContext = Field(default_factory=ReadingContext)
    arm_id: str = Field(..., min_length=1, description="Strategy that produced the recommendation")
    rank: int = Field(0, ge=0)
    score: float = 0.0
    shown_at: Optional[datetime] = None


class ImpressionResponse(BaseModel):
    impression_id: str
    timestamp: datetime


class ActionRequest(BaseModel):
    identity: str = Field(..., min_length=1)
    book_id: str = Field(..., min_length=1)
    action_type: str = Field(..., description="click/save/unsave/rate/view/dismiss/share")
    value: Optional[float] = Field(None, description="Rating for rate, duration in ms for view")
    timestamp: Optional[datetime] = None
    context: Optional[ReadingContext] = None

    @field_validator("action_type")
    @classmethod
    def known_action_type(cls, value: str) -> str:
        if value not in ACTION_CATEGORIES:
            raise ValueError(f"action_type must be one of {ACTION_CATEGORIES}")
        return value


class ActionResponse(BaseModel):
    success: bool
    attributed: int
    attributions: List[Dict[str, Any]]
    timestamp: datetime


class UpdateRequest(BaseModel):
    identity: str = Field(..., min_length=1)
    arm_id: str = Field(..., min_length=1)
    context: ReadingContext = Field(default_factory=ReadingContext)
    reward: float


class LearningResponse(BaseModel):
    arm_id: str
    old_average: float
    new_average: float
    improvement: float
    confidence: float
    learning_rate: float
    interaction_count: int


class ResetRequest(BaseModel):
    identity: str = Field(..., min_length=1)
    arm_id: Optional[str] = None


class MigrationRequest(BaseModel):
    anonymous: str = Field(..., min_length=1, description="Anonymous session identity")
    authenticated: str = Field(..., min_length=1, description="Authenticated user identity")
    policy: Optional[str] = Field(None, description="merge, keep_authenticated or keep_anonymous")


class RewardProcessingRequest(BaseModel):
    identity: Optional[str] = None
    hours_back: float = Field(24, gt=0)


class CompareRequest(BaseModel):
    context1: ReadingContext
    context2: ReadingContext
    timestamp: Optional[datetime] = None


class EngineMetrics(BaseModel):
    total_selections: int
    fallback_selections: int
    model_updates: int
    failed_updates: int
    impressions_recorded: int
    actions_recorded: int
    rewards_attributed: int
    avg_response_time: float
    events: Dict[str, int] = Field(default_factory=dict)


# Dependency to get settings
def get_config():
    return get_settings()


# Dependency to get recommendation engine
def get_recommendation_engine():
    global recommendation_engine, event_metrics
    if recommendation_engine is None:
        settings = get_config()
        configure_logging(settings.log_level, settings.log_file)

        observer = LoggingObserver()
        if settings.enable_metrics:
            event_metrics = MetricsObserver()
            observer = CompositeObserver(observer, event_metrics)

        recommendation_engine = BanditRecommendationEngine.from_settings(settings, observer=observer)
        logger.info("Recommendation engine initialised successfully")
    return recommendation_engine


def _http_error(error: Exception, action: str) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(error, ValueError):
        return HTTPException(status_code=422, detail=str(error))
    if isinstance(error, PersistenceError):
        logger.error(f"Storage failure while trying to {action}: {error}")
        return HTTPException(status_code=503, detail=f"Storage unavailable: {error}")
    if isinstance(error, ComputationError):
        logger.error(f"Computation failure while trying to {action}: {error}")
        return HTTPException(status_code=409, detail=f"Model update rejected: {error}")
    logger.error(f"Error trying to {action}: {error}")
    return HTTPException(status_code=500, detail=f"Failed to {action}: {error}")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "message": "Reading Strategy Bandit API",
        "version": "1.0.0",
        "status": "healthy",
        "timestamp": datetime.now()
    }


@app.post("/strategy", response_model=StrategyResponse)
def select_strategy(request: StrategyRequest,
                    engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """
    Choose the recommendation strategy for a reading context.

    Always answers: when the bandit cannot score any strategy the fallback
    strategy is returned with zero confidence.
    """
    selection = engine.select_strategy(request.context.to_context(), request.identity,
                                       request.user_features, request.timestamp)
    return StrategyResponse(
        arm_id=selection.arm_id,
        arm_name=selection.arm_name,
        predicted_reward=selection.predicted_reward,
        exploration_bonus=selection.exploration_bonus,
        confidence=selection.confidence,
        exploration_level=selection.exploration_level,
        explanation=selection.explanation,
        fallback=selection.fallback,
        timestamp=datetime.now()
    )


@app.post("/impressions", response_model=ImpressionResponse)
def record_impression(request: ImpressionRequest,
                      engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Record that a recommended book was shown."""
    try:
        impression_id = engine.record_impression(
            identity=request.identity,
            book_id=request.book_id,
            context=request.context.to_context(),
            arm_id=request.arm_id,
            rank=request.rank,
            score=request.score,
            shown_at=request.shown_at,
        )
    except Exception as e:
        raise _http_error(e, "record impression")

    return ImpressionResponse(impression_id=impression_id, timestamp=datetime.now())


@app.post("/actions", response_model=ActionResponse)
def record_action(request: ActionRequest,
                  engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """
    Record a user action on a book.

    The action is attributed to recent impressions of the same book and the
    resulting rewards update the strategy models immediately.
    """
    try:
        attributions = engine.record_action(
            identity=request.identity,
            book_id=request.book_id,
            action_type=request.action_type,
            value=request.value,
            timestamp=request.timestamp,
            context=request.context.to_context() if request.context else None,
        )
    except Exception as e:
        raise _http_error(e, "record action")

    return ActionResponse(
        success=True,
        attributed=len(attributions),
        attributions=[attribution.to_dict() for attribution in attributions],
        timestamp=datetime.now()
    )


@app.post("/models/update", response_model=LearningResponse)
def update_model(request: UpdateRequest,
                 engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Apply an explicit reward to a strategy model."""
    try:
        result = engine.update_model(request.arm_id, request.context.to_context(), request.reward,
                                     request.identity)
    except Exception as e:
        raise _http_error(e, "update model")

    return LearningResponse(**vars(result))


@app.post("/models/{identity}/initialize")
def initialize_models(identity: str, engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Persist fresh models for every strategy the identity has no state for."""
    summary = engine.initialize_models(identity)
    return {**summary, "timestamp": datetime.now()}


@app.post("/models/reset")
def reset_models(request: ResetRequest, engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Forget learned state for one strategy or all strategies of an identity."""
    try:
        removed = engine.reset(request.identity, request.arm_id)
    except Exception as e:
        raise _http_error(e, "reset models")

    return {"success": True, "removed": removed, "timestamp": datetime.now()}


@app.get("/stats/{identity}")
def get_stats(identity: str, engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Per-strategy learning statistics for an identity."""
    return engine.get_stats(identity).to_dict()


@app.post("/identity/migrate")
def migrate_identity(request: MigrationRequest,
                     engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Move an anonymous session's learning state to the authenticated user."""
    try:
        summary = engine.migrate_identity(request.anonymous, request.authenticated, request.policy)
    except Exception as e:
        raise _http_error(e, "migrate identity")

    return {"success": True, **summary, "timestamp": datetime.now()}


@app.post("/rewards/process")
def process_rewards(request: RewardProcessingRequest,
                    engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Learn from attributed rewards that have not reached a model yet."""
    summary = engine.process_reward_signals(request.identity, request.hours_back)
    return {**summary, "timestamp": datetime.now()}


@app.post("/contexts/compare")
def compare_contexts(request: CompareRequest,
                     engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Similarity of two reading contexts with an explanation."""
    comparison = engine.encoder.compare(request.context1.to_context(), request.context2.to_context(),
                                        now=request.timestamp)
    return vars(comparison)


@app.get("/contexts/defaults")
def context_defaults(engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Suggested context for the current time of day."""
    return engine.encoder.smart_defaults().to_dict()


@app.get("/metrics", response_model=EngineMetrics)
def get_metrics(engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """
    Get performance metrics for the strategy bandit.

    Returns counters for selections, fallbacks, updates, impressions and
    actions, the average selection latency and per-event counts.
    """
    metrics = engine.get_metrics()
    events = event_metrics.snapshot() if event_metrics is not None else {}
    return EngineMetrics(**metrics, events=events)


@app.get("/health")
def health_check(engine: BanditRecommendationEngine = Depends(get_recommendation_engine)):
    """Comprehensive health check endpoint."""
    try:
        metrics = engine.get_metrics()

        return {
            "status": "healthy",
            "recommendation_engine": "operational",
            "strategies": engine.bandit_config.arm_ids,
            "total_selections": metrics['total_selections'],
            "avg_response_time": metrics['avg_response_time'],
            "timestamp": datetime.now()
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "timestamp": datetime.now()
        }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
