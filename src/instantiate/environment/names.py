"""Stack naming compatible with docker compose projects, swarm stacks and k8s labels."""

import re
import unicodedata

MAX_STACK_NAME_LENGTH = 63


def sanitize_name(value: str) -> str:
    """Strip accents and anything outside [a-z0-9-], mapping path separators to '-'."""
    normalized = unicodedata.normalize("NFD", value or "")
    without_marks = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    hyphenated = re.sub(r"[/\\]", "-", without_marks)
    return re.sub(r"[^a-zA-Z0-9-]", "", hyphenated).lower()


def build_stack_name(project_name: str, mr_name: str) -> str:
    """
    Deterministic stack name for a merge request.

    >>> build_stack_name("Mon Projet", "Feature #1")
    'monprojet-feature1'
    """
    parts = [part for part in (sanitize_name(project_name), sanitize_name(mr_name)) if part]
    name = re.sub(r"-{2,}", "-", "-".join(parts))
    if len(name) > MAX_STACK_NAME_LENGTH:
        name = name[:MAX_STACK_NAME_LENGTH].rstrip("-")
    return name
