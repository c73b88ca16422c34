"""Cluster-side model and storage node for the replicated key-value store."""
