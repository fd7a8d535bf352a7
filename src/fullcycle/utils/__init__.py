"""Small helpers shared by the pipeline modules."""

from .slug import branch_name, commit_message, commit_type, slugify

__all__ = ["branch_name", "commit_message", "commit_type", "slugify"]
