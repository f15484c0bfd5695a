"""
Conversation orchestration: planning, specialist dispatch and the turn loop.
"""
