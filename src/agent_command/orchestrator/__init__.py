"""Prompt decomposition, wave scheduling, sub-agent queue and suspension.

Everything that mutates a run goes through one lock owned by the engine;
agents and their subprocesses run on their own threads and report back
through events.
"""
