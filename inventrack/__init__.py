"""InvenTrack inventory assistant: role-gated tool-calling agent."""
