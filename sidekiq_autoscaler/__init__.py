"""
Queue-aware autoscaler for Sidekiq worker deployments on Kubernetes.

This package watches Sidekiq queue depths and the replica counts of an
application's background-worker deployments, and computes on a fixed cadence
how many replicas each deployment should run.
"""

__version__ = "0.1.0"
