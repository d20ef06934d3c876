"""
Per-device synchronization.

- validate: semantic type checks for inbound flow values
- changes: change detection over nested attribute state
- battery: PowerSource composition and battery messages
- synchronizer: the DeviceSynchronizer worker
"""
