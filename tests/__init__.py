"""
Test package for transcode_queue.

Unit tests cover single modules, integration tests run the worker pool and
the encode path against real child processes, regression tests pin down
behavior of persisted state and dispatch ordering.
"""
