"""Repository layer with tenant isolation enforcement."""
