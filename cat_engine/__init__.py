"""
Computerized Adaptive Testing engine.
"""
