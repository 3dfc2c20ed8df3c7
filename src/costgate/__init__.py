"""costgate - local cost/risk scan gate for git hooks and shells."""

__version__ = "0.4.0"
