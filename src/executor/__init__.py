"""Execution layer for the ebook pipeline.

Architecture (bottom-up):
- db: Connection factory and raw SQL (SQLite or PostgreSQL)
- job_queue: Durable priority queue with retries, leases and retention
- rate_limit: Token bucket shared by chapter-generation calls
- worker: Claims jobs and runs them on a bounded thread pool
"""
