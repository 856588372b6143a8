from importlib import import_module

__all__ = [
    "AccountService",
    "PolymarketClient",
    "ExecutionClient",
    "EventBus",
    "BudgetLedger",
    "RiskGate",
    "ResolutionScheduler",
    "SpreadService",
    "SnipeService",
    "TradingLoop",
    "TradingRuntime",
]

_LAZY_EXPORTS = {
    "AccountService": ("services.account", "AccountService"),
    "PolymarketClient": ("services.polymarket", "PolymarketClient"),
    "ExecutionClient": ("services.execution", "ExecutionClient"),
    "EventBus": ("services.event_bus", "EventBus"),
    "BudgetLedger": ("services.ledger", "BudgetLedger"),
    "RiskGate": ("services.risk_gate", "RiskGate"),
    "ResolutionScheduler": ("services.resolution", "ResolutionScheduler"),
    "SpreadService": ("services.spread", "SpreadService"),
    "SnipeService": ("services.snipe", "SnipeService"),
    "TradingLoop": ("services.trading_loop", "TradingLoop"),
    "TradingRuntime": ("services.runtime", "TradingRuntime"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
