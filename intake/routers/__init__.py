"""HTTP routers exposing the intake service."""
