"""
LessonPulse backend: lesson feedback, wellbeing chat and platform administration API
"""
__version__ = "1.0.0"
