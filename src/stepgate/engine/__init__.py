"""Step execution engine: plans, validation, retries, checkpoints and recovery."""
