"""
Operation Metrics
=================
Per-operation timing and outcome collection for batch runs.

The collector is the only state shared between executor workers, so it
guards itself with a lock.
"""

import json
import time
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.table import Table
from rich import box


@dataclass
class OperationMetrics:
    """Container for one operation's metrics."""
    operation: str
    address: str
    start_time: float
    end_time: Optional[float] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error_kind: Optional[str] = None
    signature: Optional[str] = None

    def finalize(self, success: bool = True, error_kind: Optional[str] = None,
                 signature: Optional[str] = None):
        """Finalize the metrics with result."""
        self.end_time = time.time()
        self.duration_ms = (self.end_time - self.start_time) * 1000
        self.success = success
        self.error_kind = error_kind
        self.signature = signature

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'address': self.address,
            'start_time': datetime.fromtimestamp(self.start_time).isoformat(),
            'end_time': datetime.fromtimestamp(self.end_time).isoformat() if self.end_time else None,
            'duration_ms': round(self.duration_ms, 2) if self.duration_ms is not None else None,
            'success': self.success,
            'error_kind': self.error_kind,
            'signature': self.signature,
        }


class MetricsCollector:
    """Collects and aggregates operation metrics."""

    def __init__(self):
        self.metrics: List[OperationMetrics] = []
        self._lock = threading.Lock()

    def start(self, operation: str, address: str) -> OperationMetrics:
        return OperationMetrics(operation=operation, address=address, start_time=time.time())

    def add_metric(self, metric: OperationMetrics):
        with self._lock:
            self.metrics.append(metric)

    def get_summary(self) -> Dict[str, Any]:
        """Get summary statistics grouped by operation."""
        with self._lock:
            metrics = list(self.metrics)

        operations: Dict[str, Dict[str, Any]] = {}
        for m in metrics:
            op = operations.setdefault(m.operation, {
                'total': 0, 'success': 0, 'failure': 0, 'durations': [], 'errors': {}
            })
            op['total'] += 1
            if m.success:
                op['success'] += 1
            else:
                op['failure'] += 1
                if m.error_kind:
                    op['errors'][m.error_kind] = op['errors'].get(m.error_kind, 0) + 1
            if m.duration_ms is not None:
                op['durations'].append(m.duration_ms)

        summary: Dict[str, Any] = {'total_operations': len(metrics), 'operations': {}}
        for name, op in operations.items():
            durations = op.pop('durations')
            op['success_rate'] = round(op['success'] / op['total'] * 100, 2)
            op['avg_duration_ms'] = round(sum(durations) / len(durations), 2) if durations else 0
            op['max_duration_ms'] = round(max(durations), 2) if durations else 0
            summary['operations'][name] = op
        return summary

    def summary_table(self) -> Table:
        """Render the summary as a Rich table."""
        summary = self.get_summary()

        table = Table(title="Operation Metrics", box=box.ROUNDED)
        table.add_column("Operation", style="cyan")
        table.add_column("Total", justify="right")
        table.add_column("Success", justify="right", style="green")
        table.add_column("Failure", justify="right", style="red")
        table.add_column("Success %", justify="right")
        table.add_column("Avg ms", justify="right")
        table.add_column("Max ms", justify="right")

        for name, stats in summary['operations'].items():
            table.add_row(
                name,
                str(stats['total']),
                str(stats['success']),
                str(stats['failure']),
                f"{stats['success_rate']:.1f}%",
                f"{stats['avg_duration_ms']:.2f}",
                f"{stats['max_duration_ms']:.2f}",
            )
        return table

    def clear(self):
        with self._lock:
            self.metrics.clear()

    def save_to_file(self, filepath: str):
        """Save all metrics to a JSON file."""
        data = {
            'summary': self.get_summary(),
            'metrics': [m.to_dict() for m in list(self.metrics)],
        }
        Path(filepath).parent.mkdir(parents=True, exist_ok=True)
        with open(filepath, 'w') as f:
            json.dump(data, f, indent=2)
