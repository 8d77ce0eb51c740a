"""Issue tracker integrations."""

from .beads import BeadsClient, BeadsError, IssueLabels

__all__ = ["BeadsClient", "BeadsError", "IssueLabels"]
