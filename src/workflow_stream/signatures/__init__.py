from .assistant_signatures import AssistantReply

__all__ = ["AssistantReply"]
