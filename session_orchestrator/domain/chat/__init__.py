# Canonical history is what the engine owns and feeds back into generation.
# The simplified chat is what the renderer sees: stable ids, no system item,
# folded response blocks, per-turn token stats.
