"""Component lifecycle management."""

from reloadkit.lifecycle.runner import LifecycleRunner, LifecycleTransition

__all__ = [
    "LifecycleRunner",
    "LifecycleTransition",
]
