"""
MPM Taichi kernels - interpolation weights and grid addressing.
"""
import taichi as ti

# Nodes at offsets -2..2 cover the full support of the cubic B-spline.
STENCIL_RADIUS = 2
STENCIL = ((-STENCIL_RADIUS, STENCIL_RADIUS + 1),) * 3

vec3 = ti.types.vector(3, float)
ivec3 = ti.types.vector(3, ti.i32)


@ti.func
def cubic_bspline(x):
    """
    Cubic B-spline kernel for MPM interpolation.

    Args:
        x: Signed distance (normalized by grid spacing)

    Returns:
        Kernel weight
    """
    w = 0.0
    abs_x = ti.abs(x)
    if abs_x < 1.0:
        w = 0.5 * abs_x * abs_x * abs_x - x * x + 2.0 / 3.0
    elif abs_x < 2.0:
        w = -1.0 / 6.0 * abs_x * abs_x * abs_x + x * x - 2.0 * abs_x + 4.0 / 3.0
    return w


@ti.func
def cubic_bspline_slope(x):
    """
    Derivative of the cubic B-spline kernel.

    Args:
        x: Signed distance (normalized by grid spacing)

    Returns:
        Kernel slope
    """
    slope = 0.0
    abs_x = ti.abs(x)
    if abs_x < 1.0:
        slope = 1.5 * abs_x * x - 2.0 * x
    elif abs_x < 2.0:
        slope = -0.5 * abs_x * x + 2.0 * x - 2.0 * x / abs_x
    return slope


@ti.func
def kernel_weight(offset, inv_edge):
    """Separable weight N of a particle-to-node offset (world units)."""
    t = offset * inv_edge
    return cubic_bspline(t[0]) * cubic_bspline(t[1]) * cubic_bspline(t[2])


@ti.func
def kernel_gradient(offset, inv_edge):
    """Gradient dN of the separable weight with respect to the particle position."""
    t = offset * inv_edge
    n = ti.Vector([cubic_bspline(t[0]), cubic_bspline(t[1]), cubic_bspline(t[2])])
    s = ti.Vector([cubic_bspline_slope(t[0]), cubic_bspline_slope(t[1]), cubic_bspline_slope(t[2])])
    return ti.Vector([
        s[0] * inv_edge * n[1] * n[2],
        n[0] * s[1] * inv_edge * n[2],
        n[0] * n[1] * s[2] * inv_edge,
    ])


@ti.func
def grid_coord(x, inv_edge, origin):
    """Nearest node coordinate of a world position."""
    return ti.cast(ti.floor((x - origin) * inv_edge + 0.5), ti.i32)


@ti.func
def grid_hash(cell, bins):
    """Row-major flat index of an integer node coordinate."""
    return (cell[2] * bins[1] + cell[1]) * bins[0] + cell[0]


@ti.func
def node_in_bounds(cell, bins):
    inside = True
    for d in ti.static(range(3)):
        if cell[d] < 0 or cell[d] >= bins[d]:
            inside = False
    return inside


@ti.func
def node_location(cell, edge, origin):
    return origin + edge * ti.cast(cell, float)
