"""Decide which backend owns the contract for resuming a turn after tool calls."""

from __future__ import annotations

from typing import AbstractSet

from .types import BackendDescriptor, BackendKind

__all__ = ["classify", "normalize_provider"]


def normalize_provider(provider_kind: str | None) -> str:
    return (provider_kind or "").strip().lower()


def classify(
    descriptor: BackendDescriptor,
    *,
    native_providers: AbstractSet[str],
    external_providers: AbstractSet[str],
) -> BackendKind:
    """Classify ``descriptor`` as INTERNAL or EXTERNAL.

    A model is EXTERNAL only when it talks to a custom endpoint and its provider
    is either a known externally-hosted service or something this application
    does not integrate natively. Everything else resumes internally from the
    session history.

    Args:
        descriptor: Provider kind and optional custom endpoint of the active model.
        native_providers: Providers whose continuation is handled in-process.
        external_providers: Externally hosted providers that need a relay step.
    """

    endpoint = (descriptor.custom_endpoint or "").strip()
    if not endpoint:
        return BackendKind.INTERNAL
    provider = normalize_provider(descriptor.provider_kind)
    if provider in external_providers or provider not in native_providers:
        return BackendKind.EXTERNAL
    return BackendKind.INTERNAL
