"""HTTP routers exposing the engine."""
