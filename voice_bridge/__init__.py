"""
Realtime voice bridge: turns an external streaming speech session into
discrete chat turns.
"""
