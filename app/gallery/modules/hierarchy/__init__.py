"""
Organisation tree: District -> Group -> Troupe -> Patrouille, plus users and
their district grants.

- Administration is ADMIN-only and lives under /admin/*
- Deletes are refused while children still reference the row
- ``AncestryResolver`` answers "which district owns this troupe" for every
  authorization decision
"""
