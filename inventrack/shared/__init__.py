"""Code shared by the orchestrator and the tool modules."""
