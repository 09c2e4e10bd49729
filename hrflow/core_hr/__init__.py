"""Core HR module — Department, Position and Employee models (org structure)."""

from hrflow.core_hr.models import Department, Employee, Position

__all__ = ["Employee", "Department", "Position"]
