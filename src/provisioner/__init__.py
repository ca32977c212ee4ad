"""
Provisioner - staged, crash-resumable lifecycle operations for managed
Kubernetes clusters.

- provisioner.core: errors, logging, configuration, metrics, ORM plumbing
- provisioner.operations: Operation/Stage model, Executor, Queue
- provisioner.persistence: Session contract and its implementations
- provisioner.cli: operator command line
"""

__version__ = "0.1.0"
