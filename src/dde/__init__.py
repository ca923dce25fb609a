"""Deal Diligence Engine: orchestration core and event-sourced fact store."""

__version__ = "0.1.0"
