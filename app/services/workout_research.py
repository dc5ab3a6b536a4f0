"""Exercise-research prompt for workout plan generation."""
from app.schemas.research import ResearchRequest, WorkoutResearchRequest

WORKOUT_RESEARCH_SYSTEM_PROMPT = (
    "You are an expert fitness researcher. Provide evidence-based information about exercises, "
    "training methodologies, and fitness approaches. Focus on scientific research, best practices, "
    "and safety considerations. Include citations to published research when available."
)
WORKOUT_RESEARCH_MODEL = "sonar-medium-online"


def build_workout_research_prompt(profile: WorkoutResearchRequest) -> str:
    lines = [
        f"Gather scientific exercise research for a {profile.experience} level fitness enthusiast "
        f"with a primary goal of {profile.goal}. They have access to {profile.equipment} equipment, "
        f"want to train {profile.days_per_week} days per week, for {profile.duration} minutes per session.",
    ]
    if profile.preferences:
        lines.append(f"They prefer: {profile.preferences}.")
    if profile.injuries:
        lines.append(f"They have the following injuries/limitations: {profile.injuries}.")
    lines.append("Include cardio exercises." if profile.include_cardio else "Do not include cardio exercises.")
    lines.append(
        "Include mobility/flexibility work."
        if profile.include_mobility
        else "Do not include mobility/flexibility work."
    )
    lines.append(
        "Focus on evidence-based training methodologies, optimal exercise selection, "
        "and appropriate volume/intensity for their experience level."
    )
    return "\n".join(lines)


def build_workout_research_request(profile: WorkoutResearchRequest) -> ResearchRequest:
    return ResearchRequest(
        user_content=build_workout_research_prompt(profile),
        system_content=WORKOUT_RESEARCH_SYSTEM_PROMPT,
        model=WORKOUT_RESEARCH_MODEL,
        max_tokens=1500,
        return_citations=True,
    )
