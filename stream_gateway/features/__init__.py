"""Model-backed features built on top of the gateway client."""
