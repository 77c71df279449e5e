"""
Shared pieces for the image server: request/option types, JSON logging and
the per-request debug trace sinks.
"""
