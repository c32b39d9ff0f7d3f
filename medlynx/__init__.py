"""MedLynx medication reminder scheduling and adherence engine."""

__version__ = "0.1.0"
