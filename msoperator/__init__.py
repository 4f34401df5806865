"""Resource models, manifest builders, an in-memory object store, admission checks and reconciliation for a cluster metrics-server."""

__version__ = "0.1.0"
__all__ = ["builder", "constants", "controller", "kube", "types", "webhook"]