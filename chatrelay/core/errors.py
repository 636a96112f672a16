"""Relay error kinds and their mapping to user-facing text and HTTP status."""

from __future__ import annotations

import asyncio

import httpx
import openai


class RelayError(Exception):
    """Base class for streaming relay failures."""


class SourceError(RelayError):
    """The token source failed mid-stream.

    ``description`` is the user-facing text sent in the terminal error event;
    ``partial_text`` is the text already flushed to the sink in progress events;
    ``terminal_sent`` tells the request handler whether subscribers already got
    the terminal error event.
    """

    def __init__(self, description: str, partial_text: str = "", terminal_sent: bool = False) -> None:
        super().__init__(description)
        self.description = description
        self.partial_text = partial_text
        self.terminal_sent = terminal_sent


class RelayTimeoutError(SourceError):
    """The enclosing request exceeded its duration ceiling."""


class TitleGenerationError(RelayError):
    """Title generation failed. Always contained, never reaches the request handler."""


def format_source_error(exc: BaseException) -> str:
    """Turn a model/client exception into a short message for the user (no HTML, no raw bodies)."""
    if isinstance(exc, SourceError):
        return exc.description
    raw = str(exc).strip()
    err = raw.lower()
    if is_timeout(exc):
        return "Erreur: le modèle n'a pas répondu à temps. Réessayez plus tard."
    if "401" in err or "unauthorized" in err or isinstance(exc, openai.AuthenticationError):
        return "Erreur: clé API refusée par le fournisseur du modèle."
    if "429" in err or isinstance(exc, openai.RateLimitError):
        return "Erreur: trop de requêtes vers le modèle. Réessayez dans un instant."
    if "<html" in err or "<!doctype" in err or (raw.startswith("<") and ">" in raw):
        return "Erreur: le fournisseur du modèle a renvoyé une réponse invalide."
    if "500" in err or "502" in err or "503" in err or "bad gateway" in err:
        return "Erreur: le fournisseur du modèle est temporairement indisponible."
    if isinstance(exc, (httpx.ConnectError, openai.APIConnectionError)) or "connection" in err:
        return "Erreur: impossible de joindre le fournisseur du modèle."
    one_line = raw.replace("\n", " ").replace("\r", " ").strip()
    if len(one_line) > 120:
        one_line = one_line[:117] + "..."
    return f"Erreur: {one_line}" if one_line else "Erreur: le modèle a échoué."


def is_timeout(exc: BaseException) -> bool:
    if isinstance(
        exc,
        (RelayTimeoutError, asyncio.TimeoutError, httpx.TimeoutException, openai.APITimeoutError),
    ):
        return True
    text = str(exc).lower()
    return "timeout" in text or "timed out" in text


def status_for_error(exc: BaseException) -> int:
    """504 for timeouts (by type or by message text), 500 for anything else."""
    cause = exc.__cause__
    if is_timeout(exc) or (cause is not None and is_timeout(cause)):
        return 504
    return 500
