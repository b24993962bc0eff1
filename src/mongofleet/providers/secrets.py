"""Resolve credential references to plaintext at the moment of use."""
from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path


class SecretsError(RuntimeError):
    """Raised when a credential reference cannot be resolved."""


class SecretsResolver:
    """Resolve ``env:NAME`` and ``file:/path`` credential references.

    Resolved values are returned to the caller only; the resolver never
    caches, logs or persists them.
    """

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        """Use *env* (defaults to :data:`os.environ`) for ``env:`` references."""
        self._env = env if env is not None else os.environ

    def resolve(self, reference: str) -> str:
        """Return the plaintext value behind *reference*."""
        scheme, sep, target = reference.partition(":")
        if not sep or not target:
            raise SecretsError(
                f"Unsupported credential reference '{reference}'; use env:NAME or file:/path."
            )
        if scheme == "env":
            value = self._env.get(target)
            if value is None:
                raise SecretsError(f"Environment variable '{target}' is not set.")
            return value
        if scheme == "file":
            path = Path(target).expanduser()
            try:
                return path.read_text(encoding="utf-8").strip()
            except OSError as exc:
                raise SecretsError(f"Unable to read credential file {path}: {exc}") from exc
        raise SecretsError(f"Unknown credential scheme '{scheme}' in reference '{reference}'.")


__all__ = ["SecretsError", "SecretsResolver"]
