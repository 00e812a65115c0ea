"""
Realtime notification relay: polling, fan-out and presentation.
"""
