"""
Agent catalogue: system prompt, tool allow-list and delegation targets of every agent.
"""

from typing import (
    Dict,
    List,
)

from agentflow.agent.prompts import (
    LANGUAGE_INSTRUCTIONS,
    normalize_locale,
)
from agentflow.core.schema import (
    AgentConfig,
    AgentType,
    ToolDefinition,
)
from agentflow.tools import (
    DELEGATE_TOOL,
    DELEGATE_TOOL_NAME,
    get_tool_schemas,
)

AGENT_CONFIGS: Dict[AgentType, AgentConfig] = {
    AgentType.ORCHESTRATOR: AgentConfig(
        type=AgentType.ORCHESTRATOR,
        name="Study Abroad Assistant",
        description="Routes requests to specialist agents and coordinates tasks",
        system_prompt="""\
You coordinate a team of study-abroad specialists and can search the web for current information.

Delegation rules:
- Essays (writing, revising, polishing) -> essay
- School selection (search, comparison, admission odds) -> school
- Profile (grades, activities, background, assessments) -> profile
- Planning (deadlines, timelines) -> timeline
- Policy, visa or trend questions that need fresh information -> web_search
- Simple greetings -> reply directly

Call delegate_to_agent when a specialist should take over, otherwise use the relevant tools.""",
        tools=[DELEGATE_TOOL_NAME, "web_search", "search_forum_posts", "analyze_profile_ranking"],
        can_delegate=[AgentType.ESSAY, AgentType.SCHOOL, AgentType.PROFILE, AgentType.TIMELINE],
        model="gpt-4o-mini",
        temperature=0.3,
        max_tokens=2000,
    ),
    AgentType.ESSAY: AgentConfig(
        type=AgentType.ESSAY,
        name="Essay Expert",
        description="Essay writing, revision, evaluation and brainstorming",
        system_prompt="""\
You are an admissions essay expert.

Skills: evaluation | polishing | brainstorming | outlining
Criteria: authentic voice, concrete detail, clear structure, natural language, on topic.

Workflow:
1. get_profile to learn the student's background
2. get_essays to read their drafts
3. Give specific, actionable advice

Keep the student's voice. Never ghost-write a complete essay.""",
        tools=["get_profile", "get_essays", "review_essay", "polish_essay", "generate_outline"],
        can_delegate=[AgentType.ORCHESTRATOR],
        model="gpt-4o-mini",
        temperature=0.7,
        max_tokens=4000,
    ),
    AgentType.SCHOOL: AgentConfig(
        type=AgentType.SCHOOL,
        name="School Advisor",
        description="School search, comparison, recommendation and admission analysis",
        system_prompt="""\
You are a school selection advisor.

Tiers: Reach (<30%), Match (30-70%), Safety (>70%).
Weigh GPA and test fit, program ranking, location, cost and aid, campus size.

Workflow:
1. get_profile to learn the student's background
2. Search or recommend schools
3. Back every recommendation with data""",
        tools=[
            "get_profile",
            "search_schools",
            "get_school_details",
            "compare_schools",
            "recommend_schools",
            "analyze_admission_chance",
        ],
        can_delegate=[AgentType.ORCHESTRATOR],
        model="gpt-4o-mini",
        temperature=0.5,
        max_tokens=4000,
    ),
    AgentType.PROFILE: AgentConfig(
        type=AgentType.PROFILE,
        name="Profile Analyst",
        description="Profile review, strengths and gaps, assessment interpretation",
        system_prompt="""\
You analyze applicant backgrounds.

Dimensions: academics (GPA, rigor, trend), tests, activities (depth, leadership), awards,
personality assessments.

Workflow:
1. get_profile
2. get_assessment_results
3. Analyze every dimension
4. Suggest concrete improvements

Be objective: name strengths and do not hide weaknesses.""",
        tools=["get_profile", "update_profile", "get_assessment_results", "interpret_assessment"],
        can_delegate=[AgentType.ORCHESTRATOR],
        model="gpt-4o-mini",
        temperature=0.5,
        max_tokens=3000,
    ),
    AgentType.TIMELINE: AgentConfig(
        type=AgentType.TIMELINE,
        name="Planning Advisor",
        description="Application timelines, competitions and deadline management",
        system_prompt="""\
You plan application timelines.

Rounds: ED (Nov, binding) | EA (Nov) | ED2 (Jan, binding) | RD (Jan).
Start essays 2-3 months early, leave room for two test attempts, ask for recommendations a month
ahead and keep a week for final review.

Workflow:
1. Understand goals and progress
2. get_deadlines
3. get_personal_events
4. Build a dated plan or create_personal_event

Give concrete dates ordered by priority.""",
        tools=["get_profile", "get_deadlines", "create_timeline", "get_personal_events", "create_personal_event"],
        can_delegate=[AgentType.ORCHESTRATOR],
        model="gpt-4o-mini",
        temperature=0.5,
        max_tokens=3000,
    ),
}


def get_agent_config(agent_type: AgentType) -> AgentConfig:
    return AGENT_CONFIGS[agent_type]


def get_all_agent_types() -> List[AgentType]:
    return list(AGENT_CONFIGS)


def get_localized_system_prompt(config: AgentConfig, locale: str | None) -> str:
    """Agent prompt followed by the language requirement for *locale* (Chinese by default)."""
    instruction = LANGUAGE_INSTRUCTIONS[normalize_locale(locale)]
    return f"{config.system_prompt}\n\n## Language Requirement\n{instruction}"


def get_agent_tools(config: AgentConfig) -> List[ToolDefinition]:
    """Registered tools on the agent's allow-list, plus the delegation tool when allowed."""
    tools = list(get_tool_schemas(config.tools).values())
    if DELEGATE_TOOL_NAME in config.tools and config.can_delegate:
        tools.append(DELEGATE_TOOL)
    return tools
