"""
Social graph module: follow edges and the follow-joined feed.
"""
