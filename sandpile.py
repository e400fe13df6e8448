""" Abelian sandpile engine with a worklist-driven toppling cascade.

A pile of sand is dropped at the centre of a square board. Any cell holding at
least four grains topples, giving one grain to each orthogonal neighbour, and
the grains that fall over the edge of the board are lost for good. The engine
keeps an agenda of cells that may be unstable so the board is never rescanned.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, TypeVar, Generic

import numpy as np
import matplotlib.pyplot as plt
from matplotlib.axes import Axes
from matplotlib.colors import ListedColormap
from matplotlib.figure import Figure

logger = logging.getLogger(__name__)

T = TypeVar("T")

# A (row, column) pair. Only ever used as an agenda entry.
Cell = tuple[int, int]

TOPPLE_LIMIT = 4
ADJ: list[Cell] = [(-1, 0), (1, 0), (0, -1), (0, 1)]

# Colours for the four stable heights, from 0 to 3 grains.
PALETTE: list[tuple[int, int, int]] = [
    (0, 0, 0), (85, 85, 85), (170, 170, 170), (255, 255, 255)
]


class SandpileError(ValueError):
    """ Base class for errors caused by bad input to the sandpile. """


class InvalidDimension(SandpileError):
    """ The board size is not a positive integer. """


class InvalidPile(SandpileError):
    """ The initial pile holds a negative amount of sand. """


class UnstableBoardError(SandpileError):
    """ The board holds a count that has no colour: negative, or one that
    still has to topple.
    """


class Board(object):
    """ A square board of grain counts.

    Coordinates outside [0, size) x [0, size) are never stored. Reading them
    yields -1 and writing them does nothing, so callers can probe the edges
    without checking bounds first.
    """
    size: int
    dissipated: int
    _cells: list[list[int]]

    def __init__(self, size: int):
        """ Constructs an empty board.

        :param size: Number of rows (and columns) of the board.
        """
        if size <= 0:
            raise InvalidDimension(f"Board size must be positive, got {size}")
        self.size = size
        self.dissipated = 0
        self._cells = [[0] * size for _ in range(size)]

    @classmethod
    def create(cls, size: int, pile: int) -> "Board":
        """ Makes a board with all the sand piled onto the centre cell.

        :param size: Number of rows (and columns) of the board.
        :param pile: Number of grains dropped onto the centre.
        :return: The new board.
        """
        if pile < 0:
            raise InvalidPile(f"Initial pile cannot be negative, got {pile}")
        board = cls(size)
        board.set(*board.centre, pile)
        return board

    @property
    def centre(self) -> Cell:
        """ The cell the initial pile is dropped onto. """
        return self.size // 2, self.size // 2

    def contains(self, r: int, c: int) -> bool:
        return 0 <= r < self.size and 0 <= c < self.size

    def get(self, r: int, c: int) -> int:
        """ Gets the number of grains on (r, c), or -1 if it is off the board.
        """
        if self.contains(r, c):
            return self._cells[r][c]
        return -1

    def set(self, r: int, c: int, value: int):
        """ Overwrites the number of grains on (r, c), if it is on the board.
        """
        if self.contains(r, c):
            self._cells[r][c] = value

    def num_rows(self) -> int:
        return self.size

    def num_cols(self) -> int:
        return self.size

    def total_grains(self) -> int:
        return sum(map(sum, self._cells))

    def max_height(self) -> int:
        return max(map(max, self._cells))

    def min_height(self) -> int:
        return min(map(min, self._cells))

    def is_stable(self) -> bool:
        """ Whether every cell holds fewer grains than the topple limit. """
        return self.max_height() < TOPPLE_LIMIT

    def unstable_cells(self) -> list[Cell]:
        return [(r, c) for r, row in enumerate(self._cells)
                for c, height in enumerate(row) if height >= TOPPLE_LIMIT]

    def to_array(self) -> np.ndarray:
        """ A copy of the grain counts, safe to hand to other code. """
        return np.array(self._cells, dtype=np.int64)

    def __eq__(self, other):
        if not isinstance(other, Board):
            return NotImplemented
        return (self.size == other.size
                and self._cells == other._cells)

    def __repr__(self):
        return (f"Board(size={self.size}, total={self.total_grains()}, "
                f"dissipated={self.dissipated})")


class Agenda(ABC):
    """ The base class for worklists of cells that may need to topple.

    The order in which entries come out does not change the final board, only
    the order of the cascade.
    """
    @abstractmethod
    def push(self, cell: Cell):
        pass

    @abstractmethod
    def pop(self) -> Cell:
        pass

    @abstractmethod
    def peek(self) -> Cell:
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass

    def empty(self) -> bool:
        return len(self) == 0


class StackAgenda(Agenda):
    """ A last-in first-out agenda. Duplicates are kept. """
    _items: list[Cell]

    def __init__(self):
        self._items = []

    def push(self, cell: Cell):
        self._items.append(cell)

    def pop(self) -> Cell:
        return self._items.pop()

    def peek(self) -> Cell:
        return self._items[-1]

    def __len__(self) -> int:
        return len(self._items)


class QueueAgenda(Agenda):
    """ A first-in first-out agenda. Duplicates are kept. """
    _items: deque[Cell]

    def __init__(self):
        self._items = deque()

    def push(self, cell: Cell):
        self._items.append(cell)

    def pop(self) -> Cell:
        return self._items.popleft()

    def peek(self) -> Cell:
        return self._items[0]

    def __len__(self) -> int:
        return len(self._items)


class UniqueQueueAgenda(QueueAgenda):
    """ A first-in first-out agenda that holds each cell at most once.

    Pushing a cell that is already waiting is a no-op, which bounds the memory
    used by the agenda to the size of the board.
    """
    _pending: set[Cell]

    def __init__(self):
        super().__init__()
        self._pending = set()

    def push(self, cell: Cell):
        if cell not in self._pending:
            self._pending.add(cell)
            super().push(cell)

    def pop(self) -> Cell:
        cell = super().pop()
        self._pending.discard(cell)
        return cell


AGENDAS: dict[str, Callable[[], Agenda]] = {
    "stack": StackAgenda,
    "queue": QueueAgenda,
    "unique": UniqueQueueAgenda,
}


def make_agenda(kind: str) -> Agenda:
    """ Makes an empty agenda by name.

    :param kind: One of "stack", "queue" or "unique".
    :return: The new agenda.
    """
    try:
        return AGENDAS[kind]()
    except KeyError:
        raise ValueError(f"Unknown agenda kind: {kind!r}, expected one of "
                         f"{sorted(AGENDAS)}") from None


@dataclass
class SimulationContext(object):
    """ A generic simulation context. """
    engine: "Sandpile"  # Reference to the engine


@dataclass
class SimulationStepContext(SimulationContext):
    """ Context to the topple that has just happened. """
    cell: Cell          # The cell that toppled.
    lost: int           # Grains that fell off the board during the topple.


# Type alias for the subsequent family of functions.
ContextTransformerType = Callable[[SimulationContext], T]


class ContextTransformer(object):
    """ A static class holding context-transforming utilities.

    All the functions receive a context (maybe a specific type) and outputs
    some results that can be used in the listeners.
    """
    @staticmethod
    def topple_count(context: SimulationContext):
        """ Number of topples performed by the engine so far. """
        return context.engine.topples

    @staticmethod
    def total_grains(context: SimulationContext):
        """ Number of grains currently on the board. """
        return context.engine.board.total_grains()

    @staticmethod
    def sand_loss(context: SimulationContext):
        """ Gives the number of sand lost due to toppling over the boundary.

        :param context: The simulation context.
        :return: Grains lost by the current topple, or all grains lost so far
        outside of a step.
        """
        if isinstance(context, SimulationStepContext):
            return context.lost
        return context.engine.board.dissipated

    @staticmethod
    def topple_location(context: SimulationContext):
        """ Gives the cell that toppled, or None outside of a step. """
        if isinstance(context, SimulationStepContext):
            return context.cell
        return None


class SimulationListener(ABC):
    """ The base class for simulation listener callback objects.

    Although this class captures nothing from the simulation, subclasses only
    need to override the callbacks they are interested in. Listeners observe
    the cascade; they must not change the board or the agenda.
    """
    def onSimulationStart(self, context: SimulationContext):
        """ A call-back triggered before the first topple.

        :param context: The simulation context.
        """
        pass

    def onSimulationEnd(self, context: SimulationContext):
        """ A call-back triggered once the board is stable.

        :param context: The simulation context.
        """
        pass

    def onSimulationStep(self, context: SimulationStepContext):
        """ A call-back triggered after every topple.

        :param context: The simulation context.
        """
        pass


class ListenerGroup(SimulationListener):
    """ Forwards every callback to each member, in order.

    The CLI uses a group to hang its summary statistics off the engine as a
    single listener.
    """
    listeners: list[SimulationListener]

    def __init__(self, listeners: list[SimulationListener]):
        self.listeners = list(listeners)

    def onSimulationStart(self, context: SimulationContext):
        for listener in self.listeners:
            listener.onSimulationStart(context)

    def onSimulationEnd(self, context: SimulationContext):
        for listener in self.listeners:
            listener.onSimulationEnd(context)

    def onSimulationStep(self, context: SimulationStepContext):
        for listener in self.listeners:
            listener.onSimulationStep(context)


class SimulationHistoryRecorder(SimulationListener):
    """ Takes snapshots of the board while it topples. """
    _records: list[tuple[int, np.ndarray]]
    _frequency: int
    _store_init: bool

    def __init__(self, frequency: int = 1, store_init: bool = True):
        """ Records simulation history.

        :param frequency: Take a snapshot every this many topples.
        :param store_init: Whether to store the initial board.
        """
        if frequency <= 0:
            raise ValueError("frequency must be positive")
        self._frequency = frequency
        self._store_init = store_init
        self._records = []

    @property
    def records(self):
        """ Gets the list of (topple count, grain counts) records. """
        return self._records

    def record_history(self, context: SimulationContext):
        """ Builds one record: the topple count and a copy of the grid.

        Subclasses may return something smaller, e.g. only the total.

        :param context: The simulation context.
        """
        return context.engine.topples, context.engine.board.to_array()

    def onSimulationStart(self, context: SimulationContext):
        self._records = []
        if self._store_init:
            self._records.append(self.record_history(context))

    def onSimulationStep(self, context: SimulationStepContext):
        if context.engine.topples % self._frequency == 0:
            self._records.append(self.record_history(context))


class StatisticsCollector(SimulationListener, Generic[T]):
    """ Tracks one number derived from the engine over a cascade.

    With store_history the value is sampled after every topple; the value at
    the end of the cascade is always kept.
    """
    calc: ContextTransformerType[T]
    store_history: bool
    value: T | None = None
    value_history: list[T] | None = None

    def __init__(self, calc: ContextTransformerType[T],
                 store_history: bool = True):
        """ Constructs a statistics collector.

        :param calc: Maps a context to the value, e.g. a ContextTransformer
        helper.
        :param store_history: Whether to store the value after every topple.
        """
        self.calc = calc
        self.store_history = store_history

    def onSimulationStart(self, context: SimulationContext):
        self.value = None
        if self.store_history:
            self.value_history = []

    def onSimulationStep(self, context: SimulationStepContext):
        if self.store_history:
            self.value = self.calc(context)
            self.value_history.append(self.value)

    def onSimulationEnd(self, context: SimulationContext):
        self.value = self.calc(context)


@dataclass
class Sandpile(object):
    """ The toppling engine.

    The engine owns one board and one agenda for the lifetime of a single run.
    Every cell that holds at least four grains is either waiting on the agenda
    or about to be pushed onto it, so an empty agenda means the board is
    stable.
    """
    # Fields that are final once initialised.
    board: Board
    agenda: Agenda = field(default_factory=UniqueQueueAgenda)
    listeners: list[SimulationListener] = ()

    # The number of topples performed so far.
    topples: int = field(default=0, init=False)

    def __post_init__(self):
        """ A special dataclass method that is called after __init__. """
        self.listeners = list(self.listeners)

        # Seed the agenda with whatever is already unstable. For a fresh board
        # this is at most the centre cell.
        for cell in self.board.unstable_cells():
            self.agenda.push(cell)

    @classmethod
    def create(cls, size: int, pile: int, agenda: Agenda | None = None,
               listeners: list[SimulationListener] = ()) -> "Sandpile":
        """ Makes an engine for a board with the sand piled on the centre.

        :param size: Number of rows (and columns) of the board.
        :param pile: Number of grains dropped onto the centre.
        :param agenda: An empty agenda. Defaults to a unique queue.
        :param listeners: Listeners that observe the cascade.
        :return: The new engine, not yet stabilised.
        """
        board = Board.create(size, pile)
        logger.debug("Created %dx%d board with %d grains on %s",
                     size, size, pile, board.centre)
        if agenda is None:
            agenda = UniqueQueueAgenda()
        return cls(board=board, agenda=agenda, listeners=listeners)

    def add_listener(self,
                     listener: SimulationListener | list[SimulationListener]):
        """ Adds listeners to the current simulation.

        :param listener: A simulation listener or a list of listeners.
        :return: Reference to itself for chaining.
        """
        if isinstance(listener, SimulationListener):
            self.listeners.append(listener)
        else:
            self.listeners.extend(listener)
        return self

    def is_converged(self) -> bool:
        """ Whether no cell is waiting to topple. """
        return self.agenda.empty()

    def topple(self, r: int, c: int):
        """ Topples a single cell.

        The cell must be on the board and hold at least four grains; toppling
        anything else breaks grain conservation.

        :param r: Row of the cell.
        :param c: Column of the cell.
        """
        board = self.board
        height = board.get(r, c)
        assert height >= TOPPLE_LIMIT, \
            f"Cannot topple ({r}, {c}) holding {height} grains"

        # Take the sand off the cell. If this is not enough, it goes back onto
        # the agenda.
        board.set(r, c, height - TOPPLE_LIMIT)
        if height - TOPPLE_LIMIT >= TOPPLE_LIMIT:
            self.agenda.push((r, c))

        lost = 0
        for dr, dc in ADJ:
            nr, nc = r + dr, c + dc

            # If the neighbour is on the board, give it sand; otherwise, let
            # it drop into the void.
            if board.contains(nr, nc):
                board.set(nr, nc, board.get(nr, nc) + 1)

                # Only the crossing from 3 to 4 queues the neighbour, so a
                # pending cell is never queued twice.
                if board.get(nr, nc) == TOPPLE_LIMIT:
                    self.agenda.push((nr, nc))
            else:
                lost += 1

        board.dissipated += lost
        self.topples += 1

        step_context = SimulationStepContext(self, (r, c), lost)
        for listener in self.listeners:
            listener.onSimulationStep(step_context)

    def stabilize(self) -> Board:
        """ Drains the agenda, toppling cells until the board is stable.

        :return: The stabilised board.
        """
        start_context = SimulationContext(self)
        for listener in self.listeners:
            listener.onSimulationStart(start_context)

        start = self.topples
        while not self.agenda.empty():
            r, c = self.agenda.pop()

            # The entry may be stale, so look at the cell again.
            if self.board.get(r, c) >= TOPPLE_LIMIT:
                self.topple(r, c)

        logger.info("Board stable after %d topples, %d grains dissipated",
                    self.topples - start, self.board.dissipated)

        end_context = SimulationContext(self)
        for listener in self.listeners:
            listener.onSimulationEnd(end_context)
        return self.board


def compute_steady_state(size: int, pile: int,
                         agenda: Agenda | None = None) -> Board:
    """ Drops a pile of sand on the centre of a board and lets it settle.

    :param size: Number of rows (and columns) of the board.
    :param pile: Number of grains dropped onto the centre.
    :param agenda: An empty agenda. Defaults to a unique queue.
    :return: The stabilised board.
    """
    return Sandpile.create(size, pile, agenda=agenda).stabilize()


def _check_stable(board: Board):
    if board.min_height() < 0:
        raise UnstableBoardError(
            f"Board holds a cell with {board.min_height()} grains, "
            f"counts cannot be negative")
    if not board.is_stable():
        raise UnstableBoardError(
            f"Board holds a cell with {board.max_height()} grains, "
            f"stabilise it before drawing")


def to_image(board: Board, cell_size: int = 1) -> np.ndarray:
    """ Turns a stable board into an RGB image.

    :param board: The stable board.
    :param cell_size: Side length, in pixels, of the square drawn per cell.
    :return: Array of shape (size * cell_size, size * cell_size, 3).
    """
    _check_stable(board)
    if cell_size <= 0:
        raise ValueError("cell_size must be positive")

    # Look up each cell's colour, then blow every cell up into a square.
    image = np.asarray(PALETTE, dtype=np.uint8)[board.to_array()]
    return np.kron(image, np.ones((cell_size, cell_size, 1), dtype=np.uint8))


def save_image(board: Board, path: str | Path, cell_size: int = 1) -> Path:
    """ Saves a stable board as a PNG image.

    :param board: The stable board.
    :param path: Where to write the image.
    :param cell_size: Side length, in pixels, of the square drawn per cell.
    :return: The path written to.
    """
    path = Path(path)
    plt.imsave(path, to_image(board, cell_size), format="png")
    logger.info("Saved %dx%d board to %s", board.size, board.size, path)
    return path


def visualise_grid(
        board: Board, fig: Figure = None, ax: Axes = None, labels=None,
        title=None):
    """ Visualise the board as a grid.

    :param board: The board to draw.
    :param fig: Matplotlib figure. If not specified, a new (figure, axis) pair
    will be created.
    :param ax: Matplotlib axis. If not specified, a new (figure, axis) pair
    will be created.
    :param labels: Grid cell annotations, or "auto" to print the counts.
    :param title: Plot title.
    :return: Figure, axes pair with the board plotted.
    """
    _check_stable(board)
    grid = board.to_array()

    if fig is None or ax is None:
        fig, ax = plt.subplots()

    cmap = ListedColormap([tuple(x / 255 for x in rgb) for rgb in PALETTE])
    ax.imshow(grid, cmap=cmap, vmin=0, vmax=TOPPLE_LIMIT - 1,
              interpolation="none")

    # Loop over data dimensions and create text annotations. Dark cells get
    # light text and the other way round.
    if labels is not None:
        if labels == "auto":
            labels = [[str(x) for x in row] for row in grid.tolist()]

        for i in range(board.size):
            for j in range(board.size):
                color = "white" if grid[i, j] < 2 else "black"
                ax.text(j, i, labels[i][j], ha="center", va="center",
                        color=color)

    ax.set_title(title)
    fig.tight_layout()

    # Return the figure and user can do whatever they want with it.
    return fig, ax
