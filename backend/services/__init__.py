from importlib import import_module

__all__ = [
    "TimeSeriesStore",
    "PatternBacktester",
    "LearningService",
    "SignalsService",
    "SimulationService",
    "ServiceContainer",
]

_LAZY_EXPORTS = {
    "TimeSeriesStore": ("services.history_store", "TimeSeriesStore"),
    "PatternBacktester": ("services.backtester", "PatternBacktester"),
    "LearningService": ("services.learning", "LearningService"),
    "SignalsService": ("services.signals", "SignalsService"),
    "SimulationService": ("services.simulation", "SimulationService"),
    "ServiceContainer": ("services.container", "ServiceContainer"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
