"""Core building blocks: discovery, reconciliation, selection, intersection and design generation."""
