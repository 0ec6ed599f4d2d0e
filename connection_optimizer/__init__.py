"""
Transit connection optimizer.

Adjusts bus schedules so trips meet external services (college classes,
commuter trains, school bells) while respecting recovery time and headway
constraints.
"""

__version__ = "1.0.0"
