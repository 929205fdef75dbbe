"""Multi-stage approval workflow for internal business documents."""
