"""
Meeting Scheduler

Negotiates meeting times with external parties over email and SMS:
drafts outreach, matches inbound replies to open negotiations,
resolves proposed dates and confirms against the calendar.
"""

__version__ = "1.0.0"
