"""Simulation harness for policies and feature toggles."""
