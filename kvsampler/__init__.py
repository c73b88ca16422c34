"""Per-store sampling of key versions across replicas."""
