"""Event consumer — turns domain events into stored notifications.

Learn: the consumer is the only writer of new notifications. It runs
inside every service instance; Redis consumer groups spread the stream
across them.
"""
