"""Tests for error formatting and status mapping."""

from __future__ import annotations

import asyncio

import httpx

from chatrelay.core.errors import (
    RelayTimeoutError,
    SourceError,
    format_source_error,
    is_timeout,
    status_for_error,
)


def test_format_timeout():
    msg = format_source_error(httpx.ReadTimeout("read timed out"))
    assert msg == "Erreur: le modèle n'a pas répondu à temps. Réessayez plus tard."


def test_format_known_http_failures():
    assert "clé API" in format_source_error(RuntimeError("Error code: 401 - Unauthorized"))
    assert "trop de requêtes" in format_source_error(RuntimeError("Error code: 429"))
    assert "indisponible" in format_source_error(RuntimeError("502 Bad Gateway"))
    assert "réponse invalide" in format_source_error(RuntimeError("<html><body>oops</body></html>"))
    assert "joindre" in format_source_error(RuntimeError("Connection refused"))


def test_format_generic_is_short_single_line():
    msg = format_source_error(RuntimeError("x" * 300 + "\nsecond line"))
    assert msg.startswith("Erreur: ")
    assert "\n" not in msg
    assert len(msg) <= len("Erreur: ") + 120


def test_format_empty_message():
    assert format_source_error(RuntimeError("")) == "Erreur: le modèle a échoué."


def test_format_source_error_passthrough():
    assert format_source_error(SourceError("Erreur: déjà formaté")) == "Erreur: déjà formaté"


def test_is_timeout():
    assert is_timeout(asyncio.TimeoutError())
    assert is_timeout(RelayTimeoutError("x"))
    assert is_timeout(RuntimeError("Request timed out."))
    assert not is_timeout(RuntimeError("boom"))


def test_status_for_error():
    assert status_for_error(RelayTimeoutError("Erreur")) == 504
    assert status_for_error(RuntimeError("boom")) == 500
    wrapped = SourceError("Erreur: le modèle n'a pas répondu à temps.")
    wrapped.__cause__ = httpx.ConnectTimeout("connect")
    assert status_for_error(wrapped) == 504
    assert status_for_error(SourceError("Erreur: 503")) == 500
