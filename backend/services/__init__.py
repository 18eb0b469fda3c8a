from importlib import import_module

__all__ = [
    "AccountRegistry",
    "CredentialStore",
    "Orchestrator",
    "OrderExecutionPipeline",
    "UiEvent",
]

_LAZY_EXPORTS = {
    "AccountRegistry": ("services.account_registry", "AccountRegistry"),
    "CredentialStore": ("services.credential_store", "CredentialStore"),
    "Orchestrator": ("services.orchestrator", "Orchestrator"),
    "OrderExecutionPipeline": ("services.order_execution", "OrderExecutionPipeline"),
    "UiEvent": ("services.notifications", "UiEvent"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
