"""agentflow: Plan/Execute/Solve agent orchestration with a resilient LLM gateway."""

__version__ = "0.1.0"
