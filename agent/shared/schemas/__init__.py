"""Pydantic schemas shared between the session core and the chat front-ends."""

from shared.schemas.messages import HandlerResult

__all__ = [
    "HandlerResult",
]
