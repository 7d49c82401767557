"""Background handlers for Driftwood.

Handlers run alongside the HTTP server and call into the agent on their
own schedule.
"""
