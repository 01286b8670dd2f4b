from __future__ import annotations
from typing import Dict, Iterable, List, Sequence, Tuple

from .types import (
    Entry,
    EntryBatch,
    JobState,
    OutputMode,
    SearchSummary,
    Target,
    TargetStatus,
)


class ResultAggregator:
    """Filters, caps and reorders entries for one search invocation.

    Steps are applied in order: case-insensitive exclusion on the raw text,
    global-limit admission, then mode-specific buffering. Instances hold
    per-invocation state and must not be shared between searches.
    """

    def __init__(
        self,
        targets: Sequence[Target],
        must_not_match: Iterable[str],
        global_limit: int,
        output_mode: OutputMode,
    ):
        self.targets: Tuple[Target, ...] = tuple(targets)
        self.output_mode = output_mode
        self.global_limit = global_limit
        self._exclusions = tuple(sorted({p.lower() for p in must_not_match if p}))
        self._order: Dict[Target, int] = {t: i for i, t in enumerate(self.targets)}

        self.emitted = 0
        self.dropped_by_exclusion = 0
        self.dropped_by_limit = 0
        self.dropped_on_close = 0
        self._admitted = 0
        self._arrival = 0

        # interleaved / serialized
        self._merge_buffer: List[Tuple[object, int, int, Entry]] = []
        # grouped
        self._groups: Dict[Target, List[Entry]] = {t: [] for t in self.targets}

        self._statuses: Dict[Target, TargetStatus] = {}
        self._flushed = False

    @property
    def limit_reached(self) -> bool:
        return self._admitted >= self.global_limit

    def is_excluded(self, entry: Entry) -> bool:
        if not self._exclusions:
            return False
        text = entry.raw.lower()
        return any(pattern in text for pattern in self._exclusions)

    def admit(self, entries: Iterable[Entry]) -> List[EntryBatch]:
        """Accept entries from one job, in the order that job produced them.

        Returns the batches ready for the sink right now: one batch per call
        in streaming mode, nothing in buffered modes.
        """
        if self._flushed:
            raise RuntimeError("aggregator already flushed")

        survivors: List[Entry] = []
        for entry in entries:
            if entry.target not in self._order:
                raise ValueError(f"entry from unknown target {entry.target}")
            if self.is_excluded(entry):
                self.dropped_by_exclusion += 1
                continue
            if self.limit_reached:
                self.dropped_by_limit += 1
                continue
            self._admitted += 1
            survivors.append(entry)

        if not survivors:
            return []

        if self.output_mode == OutputMode.STREAMING:
            self.emitted += len(survivors)
            return self._stream_batches(survivors)

        for entry in survivors:
            if self.output_mode == OutputMode.GROUPED:
                self._groups[entry.target].append(entry)
            else:
                self._merge_buffer.append(
                    (entry.timestamp, self._order[entry.target], self._arrival, entry)
                )
            self._arrival += 1
        return []

    def _stream_batches(self, survivors: List[Entry]) -> List[EntryBatch]:
        batches: List[EntryBatch] = []
        current: List[Entry] = []
        for entry in survivors:
            if current and current[-1].target != entry.target:
                batches.append(EntryBatch(tuple(current), current[0].target))
                current = []
            current.append(entry)
        batches.append(EntryBatch(tuple(current), current[0].target))
        return batches

    def discard(self, entries: Iterable[Entry]) -> None:
        """Count entries that arrived after the consumer stopped reading."""
        for entry in entries:
            if self.is_excluded(entry):
                self.dropped_by_exclusion += 1
            elif self.limit_reached:
                self.dropped_by_limit += 1
            else:
                self.dropped_on_close += 1

    def close(self) -> None:
        """Give up on buffered entries that will never be flushed."""
        if self._flushed:
            return
        self._flushed = True
        self.dropped_on_close += len(self._merge_buffer)
        self.dropped_on_close += sum(len(group) for group in self._groups.values())
        self._merge_buffer = []
        self._groups = {t: [] for t in self.targets}

    def record_status(self, status: TargetStatus) -> None:
        if status.target not in self._order:
            raise ValueError(f"status for unknown target {status.target}")
        self._statuses[status.target] = status

    def flush(self) -> List[EntryBatch]:
        """Emit whatever buffered modes have been holding back."""
        if self._flushed:
            return []
        self._flushed = True

        if self.output_mode == OutputMode.STREAMING:
            return []

        if self.output_mode == OutputMode.GROUPED:
            batches = [
                EntryBatch(tuple(self._groups[target]), target)
                for target in self.targets
                if self._groups[target]
            ]
            self.emitted += sum(len(b) for b in batches)
            self._groups = {t: [] for t in self.targets}
            return batches

        if not self._merge_buffer:
            return []
        self._merge_buffer.sort(key=lambda item: item[:3])
        merged = tuple(item[3] for item in self._merge_buffer)
        self._merge_buffer = []
        self.emitted += len(merged)
        return [EntryBatch(merged)]

    def summary(self) -> SearchSummary:
        """Totals plus one status per target, in resolution order."""
        statuses = tuple(
            self._statuses.get(target) or TargetStatus(target=target, state=JobState.PENDING)
            for target in self.targets
        )
        return SearchSummary(
            emitted=self.emitted,
            dropped_by_exclusion=self.dropped_by_exclusion,
            dropped_by_limit=self.dropped_by_limit,
            statuses=statuses,
            dropped_on_close=self.dropped_on_close,
        )


def ordered_entries(batches: Iterable[EntryBatch]) -> List[Entry]:
    """Flatten batches in emission order."""
    return [entry for batch in batches for entry in batch.entries]
