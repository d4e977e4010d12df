"""Runtime: execution paths, the shared attribute store, limits and the engine."""
