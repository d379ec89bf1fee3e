"""Pipeline orchestration.

- pipeline: Stage handlers (description, content, pdf) run by the worker
- submission: Producer-side service used by the API to create ebooks,
  approve descriptions and enqueue stage jobs
"""
