"""Find out-of-date Kubernetes node groups and build, check and apply cycle node requests."""

__version__ = "1.9.1"