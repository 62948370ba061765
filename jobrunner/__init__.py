"""
Distributed Job Runner

Executes declaratively defined background jobs across cooperating process
instances with distributed mutual exclusion, fencing tokens, retry with
backoff, a durable dead-letter store, and failure alerting.
"""

__version__ = "1.0.0"
