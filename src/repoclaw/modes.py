"""Mode dispatch table.

Each mode maps to the ordered tuple of stages it runs. The table is plain
configuration data; the state machine only ever asks "which active stage
comes next", so it stays total for every mode. Stages left out of a mode
keep their empty agent_results entry and never produce artifacts or gates.
"""

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from src.repoclaw.state.models import AgentType, Mode, PipelineState


class PromptModifiers(BaseModel):
    """Mode-specific guidance handed to agent runners."""

    emphasis: str
    tone: str
    focus: List[str] = Field(default_factory=list)


class ModeConfig(BaseModel):
    """Configuration for one optimization mode.

    Attributes:
        mode: The mode this entry configures.
        agent_priorities: Relative importance of the optional stages
            (higher is more important).
        prompt_modifiers: Guidance rendered into agent prompts.
        stages: Active stages in dispatch order. supervisor is always last.
    """

    mode: Mode
    agent_priorities: Dict[AgentType, int]
    prompt_modifiers: PromptModifiers
    stages: Tuple[AgentType, ...]


MODE_CONFIGS: Dict[Mode, ModeConfig] = {
    Mode.HACKATHON: ModeConfig(
        mode=Mode.HACKATHON,
        agent_priorities={
            AgentType.ANALYZE: 1,
            AgentType.DOCS: 2,
            AgentType.DEMO: 4,
            AgentType.PITCH: 3,
        },
        prompt_modifiers=PromptModifiers(
            emphasis="innovation and demo appeal",
            tone="exciting and engaging",
            focus=[
                "Highlight unique features and innovation",
                "Emphasize live demo and user experience",
                "Create compelling pitch materials",
                "Focus on visual appeal and wow factor",
                "Include quick start instructions",
            ],
        ),
        stages=(
            AgentType.ANALYZE,
            AgentType.DOCS,
            AgentType.DEMO,
            AgentType.PITCH,
            AgentType.SUPERVISOR,
        ),
    ),
    Mode.PLACEMENT: ModeConfig(
        mode=Mode.PLACEMENT,
        agent_priorities={
            AgentType.ANALYZE: 2,
            AgentType.DOCS: 4,
            AgentType.DEMO: 2,
            AgentType.PITCH: 3,
        },
        prompt_modifiers=PromptModifiers(
            emphasis="technical depth and best practices",
            tone="professional and detailed",
            focus=[
                "Comprehensive documentation with examples",
                "Highlight technical architecture and design patterns",
                "Emphasize code quality and testing",
                "Include detailed API documentation",
                "Showcase problem-solving approach",
            ],
        ),
        stages=(
            AgentType.ANALYZE,
            AgentType.DOCS,
            AgentType.DEMO,
            AgentType.PITCH,
            AgentType.SUPERVISOR,
        ),
    ),
    # demo and pitch carry priority 1 for refactoring and are skipped
    Mode.REFACTOR: ModeConfig(
        mode=Mode.REFACTOR,
        agent_priorities={
            AgentType.ANALYZE: 4,
            AgentType.DOCS: 3,
            AgentType.DEMO: 1,
            AgentType.PITCH: 1,
        },
        prompt_modifiers=PromptModifiers(
            emphasis="code improvements and maintainability",
            tone="technical and actionable",
            focus=[
                "Identify code structure improvements",
                "Suggest refactoring opportunities",
                "Highlight technical debt",
                "Recommend best practices",
                "Focus on code quality and maintainability",
            ],
        ),
        stages=(
            AgentType.ANALYZE,
            AgentType.DOCS,
            AgentType.SUPERVISOR,
        ),
    ),
}


_DESCRIPTIONS: Dict[Mode, str] = {
    Mode.HACKATHON: (
        "Optimize for hackathon presentations with focus on demo and pitch "
        "materials"
    ),
    Mode.PLACEMENT: (
        "Optimize for job placements with comprehensive documentation and "
        "professional presentation"
    ),
    Mode.REFACTOR: (
        "Optimize for code improvements with focus on analysis and "
        "maintainability"
    ),
}


def is_valid_mode(mode: object) -> bool:
    """Check whether a raw value names a recognized mode."""
    if isinstance(mode, Mode):
        return True
    return isinstance(mode, str) and mode in {m.value for m in Mode}


def get_mode_config(mode: Mode) -> ModeConfig:
    return MODE_CONFIGS[Mode(mode)]


def active_stages(mode: Mode) -> Tuple[AgentType, ...]:
    """Return the stages a mode dispatches, in order."""
    return get_mode_config(mode).stages


def next_stage(state: PipelineState) -> Optional[AgentType]:
    """Return the first active stage whose result is still empty.

    Returns None when every active stage of the run's mode has a result,
    meaning the run has nothing left to dispatch.
    """
    for agent in active_stages(state.mode):
        if state.agent_results.get(agent) is None:
            return agent
    return None


def get_prompt_modifier(mode: Mode) -> str:
    """Render the mode guidance block appended to agent prompts."""
    config = get_mode_config(mode)
    modifiers = config.prompt_modifiers
    focus_points = "\n".join(
        f"{index}. {point}" for index, point in enumerate(modifiers.focus, start=1)
    )
    return (
        f"Mode: {config.mode.value.upper()}\n"
        f"Emphasis: {modifiers.emphasis}\n"
        f"Tone: {modifiers.tone}\n"
        f"\n"
        f"Focus Areas:\n"
        f"{focus_points}\n"
    )


def get_mode_description(mode: Mode) -> str:
    return _DESCRIPTIONS[Mode(mode)]


def get_mode_display_name(mode: Mode) -> str:
    return Mode(mode).value.capitalize()
