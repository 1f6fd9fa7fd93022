"""Definition storage for policies and feature toggles."""
