"""
Site adapters: one module per upstream page family. Each builds request
paths, calls the shared ScraperClient and parses HTML into records.
"""
