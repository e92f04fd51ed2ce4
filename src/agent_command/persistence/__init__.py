"""Key-value persistence for suspended agents, queues and snapshots."""
