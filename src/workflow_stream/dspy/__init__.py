from .assistant_module import AssistantModule

__all__ = ["AssistantModule"]
