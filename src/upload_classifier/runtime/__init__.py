"""Durable classification tasks: runtime queue, lifecycle controller and worker.

The runtime's ``create`` and the entity store's record of "a task is running"
are two separate writes with no transaction between them. The lifecycle
controller never trusts either alone: before launching it reconciles local
bookkeeping against the runtime's own status, and a conflicting task id is
resolved by status lookup and termination rather than assumed to be ours.
"""
