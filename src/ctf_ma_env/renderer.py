from __future__ import annotations

from typing import List

from .world import GridWorld, Team


def render_world(world: GridWorld) -> str:
    """Return an ASCII rendering of the arena.

    ``#`` wall, ``F``/``f`` red/blue flag at rest, ``R``/``B`` red/blue agent
    (lower-case ``r``/``b`` while carrying a flag).
    """
    display: List[List[str]] = [["." for _ in range(world.grid_size)] for _ in range(world.grid_size)]
    for x, y in world.walls:
        if world.in_bounds(x, y):
            display[y][x] = "#"

    for flag, char in ((world.red_flag, "F"), (world.blue_flag, "f")):
        if not flag.is_held:
            display[flag.y][flag.x] = char

    for agent in world.agents():
        char = "R" if agent.team == Team.RED else "B"
        display[agent.y][agent.x] = char.lower() if agent.has_flag else char

    return "\n".join("".join(row) for row in display)
