"""
Meeting detection collaborators: LLM-backed email parsing, calendar
scheduling and CRM contact sync.
"""
