"""
Schematic challenge progress.

Every schematic-enabled category without schematic-enabled children is an
item a patrouille has to draw; its parent category is the set it belongs to
(a top-level item is a set of one). An item is done once the patrouille has an
APPROVED SCHEMATIC picture set filed under it.
"""
