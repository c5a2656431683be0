"""sdrun - run processes as transient, resource-limited systemd units.

- Launch requests are validated and translated locally, per host capability level
- One shared D-Bus connection carries every launch and its lifecycle events
- Every created unit is paired with a guaranteed stop-and-cleanup
"""

__version__ = "0.1.0"
