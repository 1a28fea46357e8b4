"""Presence — recipient → instance facts shared through Redis.

Learn: this replaces a shared connection table. Instances never share
socket handles, only "who is connected where" plus a relay channel.
"""
