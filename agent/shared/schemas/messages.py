"""Normalized reply schema returned by command handlers."""

from __future__ import annotations

from pydantic import BaseModel


class HandlerResult(BaseModel):
    """Reply produced by a command handler.

    ``text`` is GitHub-flavoured markdown; front-ends convert it to their
    own dialect before sending.
    """

    text: str
    ok: bool = True
