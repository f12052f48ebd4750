"""OwlMend: runtime semantic-mismatch detection and repair for agent tool calls."""

__version__ = "0.1.0"
