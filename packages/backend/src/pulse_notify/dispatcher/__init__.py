"""Dispatcher — local push vs. cross-instance relay vs. backlog-only.

Learn: the dispatcher runs inside every service instance, next to the
event consumer that feeds it and the ConnectionManager it pushes into.
Instances coordinate only through Redis (presence + relay channel).
"""
