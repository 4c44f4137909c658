"""
Picture set submissions.

- ``authorization``: the single decision table for sets and design groups
- ``workflow``: PENDING -> CLASSIFIED -> APPROVED / REJECTED, with guards
- ``service``: loads, decides, transitions and persists in one transaction
"""
