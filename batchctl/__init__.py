"""batchctl - chunk-oriented batch jobs with checkpoints, retries and skips."""

__version__ = "0.1.0"
