"""firecracker-saas: multi-tenant Firecracker microVM control plane."""

__version__ = "0.3.0"
