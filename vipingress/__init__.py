"""vipingress: expose Kubernetes Ingresses as tailnet VIP services through a ProxyGroup."""

__version__ = "0.1.0"

# Lazy imports to avoid loading heavy dependencies for CLI usage
__all__ = [
    "IngressReconciler",
    "Controller",
    "OperatorConfig",
    "IngressPhase",
]

def __getattr__(name):
    if name == "IngressReconciler":
        from .reconciler import IngressReconciler
        return IngressReconciler
    elif name == "Controller":
        from .controller import Controller
        return Controller
    elif name == "OperatorConfig":
        from .models import OperatorConfig
        return OperatorConfig
    elif name == "IngressPhase":
        from .state import IngressPhase
        return IngressPhase
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")
