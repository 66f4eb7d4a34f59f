"""Pure planning logic for new and existing live media.

Modules:
    - layout: capacity tiers and partition sizes of new installations
    - upgrade: feasibility of upgrading an existing medium in place
    - preflight: checks run at batch start
"""
