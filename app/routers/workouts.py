"""
Workout endpoints that depend on research:
- POST /api/workouts/research — exercise research for a workout profile (authenticated)
"""
from fastapi import APIRouter, Depends

from app.auth import get_current_user
from app.core.research import get_research_service
from app.routers.research import run_research
from app.schemas.auth import TokenPayload
from app.schemas.research import ResearchResponse, WorkoutResearchRequest
from app.services.research_service import ResearchService
from app.services.workout_research import build_workout_research_request

router = APIRouter(prefix="/api/workouts", tags=["workouts"])


@router.post("/research", response_model=ResearchResponse)
async def workout_research(
    body: WorkoutResearchRequest,
    user: TokenPayload = Depends(get_current_user),
    service: ResearchService = Depends(get_research_service),
):
    """Evidence-based exercise research used as input for plan generation."""
    return await run_research(service, build_workout_research_request(body), user)
