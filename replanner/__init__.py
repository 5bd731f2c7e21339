"""
Replanner: AI-assisted reschedule engine for project schedules.
"""
