"""Durable task records and the decision journal."""
