"""Top-level package exports for signalforge.

Expose commonly imported submodules so tests using `from signalforge.tasks import X` or
`signalforge.infrastructure.db` resolve without explicit import ordering side effects.
"""

from importlib import import_module as _imp

_submodules = [
	"config",
	"infrastructure.db",
	"models.tables",
	"tasks.sync",
	"tasks.predictive",
	"tasks.abandonment",
	"tasks.lifecycle",
]

for _m in _submodules:
	_imp(f"signalforge.{_m}")

__all__ = ["config", "models", "tasks"]
