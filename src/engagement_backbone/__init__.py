"""
Engagement Backbone

Durable job queues, workers and the distributed cache behind the
customer-engagement platform's background work.
"""

__version__ = "1.0.0"
