from __future__ import annotations

"""Dependency helpers for FastAPI routes."""

from fastapi.requests import HTTPConnection


def get_workflow_store(connection: HTTPConnection):
    return connection.app.state.workflow_store


def get_run_store(connection: HTTPConnection):
    return connection.app.state.run_store


def get_node_registry(connection: HTTPConnection):
    return connection.app.state.node_registry


def get_substrate(connection: HTTPConnection):
    """Return the invocation substrate shared by all runs."""

    return connection.app.state.substrate


def get_engine_settings(connection: HTTPConnection):
    return connection.app.state.settings


def get_log_stream_manager(connection: HTTPConnection):
    return connection.app.state.log_stream_manager


__all__ = [
    "get_engine_settings",
    "get_log_stream_manager",
    "get_node_registry",
    "get_run_store",
    "get_substrate",
    "get_workflow_store",
]
