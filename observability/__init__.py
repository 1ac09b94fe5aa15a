"""
Structured relay events: JSON lines on stdout plus an in-memory store
backing the session read API.
"""
