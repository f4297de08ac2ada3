"""
MoodScope: mood scoring, delta detection and adaptive calibration for
conversational memory units.
"""

__version__ = "0.1.0"
