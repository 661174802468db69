"""Operator-facing module services: prescription lifecycle and dispatch."""
