"""Transactional services wrapping the workflow engine."""
