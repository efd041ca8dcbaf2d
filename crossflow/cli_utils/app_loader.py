"""Locate the application object named on the command line."""

from __future__ import annotations

import importlib
import sys
from pathlib import Path

from crossflow.app import Crossflow


def load_app(target: str, base_path: Path | None = None) -> Crossflow:
    """Import ``module:attribute`` and return the :class:`Crossflow` it names.

    ``attribute`` may also be a zero-argument factory returning the app.
    """
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {target!r}")

    search_dir = str((base_path or Path.cwd()).resolve())
    if search_dir not in sys.path:
        sys.path.insert(0, search_dir)

    module = importlib.import_module(module_name)
    try:
        obj = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module {module_name} has no attribute {attr!r}") from None
    if not isinstance(obj, Crossflow) and callable(obj):
        obj = obj()
    if not isinstance(obj, Crossflow):
        raise TypeError(f"{target} is not a Crossflow application")
    return obj
