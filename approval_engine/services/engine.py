"""
Engine wiring — the collaborators one Flask app runs the approval engine with.

init_engine() is called by create_app(); services fetch the wiring with
get_engine(). Tests swap collaborators by calling init_engine() again with
their own Directory or NotificationPort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import Flask, current_app

from approval_engine.services.chain_builder import ChainBuilder
from approval_engine.services.directory import Directory, SqlDirectory, StaticDirectory
from approval_engine.services.notification import NotificationPort, build_port

logger = logging.getLogger(__name__)

EXTENSION_KEY = "approval_engine"


@dataclass
class Engine:
    directory: Directory
    builder: ChainBuilder
    notifier: NotificationPort


def init_engine(app: Flask, directory: Directory | None = None,
                notifier: NotificationPort | None = None) -> Engine:
    """Build the engine from app.config and register it on ``app.extensions``."""
    if directory is None:
        path = app.config.get("APPROVAL_DIRECTORY_FILE")
        directory = StaticDirectory.from_json_file(path) if path else SqlDirectory()
    if notifier is None:
        notifier = build_port(app.config.get("APPROVAL_NOTIFICATIONS", "in_app"))

    engine = Engine(
        directory=directory,
        builder=ChainBuilder.from_config(directory, app.config),
        notifier=notifier,
    )
    app.extensions[EXTENSION_KEY] = engine
    logger.debug(
        "Approval engine wired: directory=%s notifier=%s",
        type(directory).__name__, type(notifier).__name__,
    )
    return engine


def get_engine() -> Engine:
    """Return the engine of the current app."""
    try:
        return current_app.extensions[EXTENSION_KEY]
    except KeyError:
        raise RuntimeError("Approval engine not initialised; call init_engine(app) first")
