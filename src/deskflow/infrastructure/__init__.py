"""
Infrastructure Module
=====================

Technical adapters shared by the bounded contexts: database engine and
sessions, and the durable task queue.
"""
