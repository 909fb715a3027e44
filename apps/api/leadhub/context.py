from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
surface_id_var: ContextVar[str | None] = ContextVar("surface_id", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_surface_id(value: str | None) -> Token[str | None]:
    return surface_id_var.set(value)


def reset_surface_id(token: Token[str | None]) -> None:
    surface_id_var.reset(token)


def get_surface_id() -> str | None:
    return surface_id_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "surface_id": get_surface_id()}
