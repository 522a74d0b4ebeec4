import warp as wp

# Nearest cuboid chosen for a point in the forward pass; the backward pass
# reuses it as a fixed routing table.
@wp.struct
class Selection:
    index: int
    distance: float
