"""
Backup module for projbackup.

This module handles the core backup functionality including:
- Run directory layout
- Streaming dump/archive/compress/encrypt pipelines
- Checksums and size-bounded splitting
- Delivery to Telegram and S3
- Execution orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, RunResult, RunState, execute_backup
from .layout import RunContext
from .pipeline import Artifact, PipelineComposer, PipelineSpec, Stage
from .sources import ArchiveStage, DatabaseDumpStage
from .splitter import split_if_oversize
from .storage import TelegramSink, S3Sink, create_sink
from .retention import RetentionSweeper

__all__ = [
    'BackupExecutor',
    'RunResult',
    'RunState',
    'execute_backup',
    'RunContext',
    'Artifact',
    'PipelineComposer',
    'PipelineSpec',
    'Stage',
    'ArchiveStage',
    'DatabaseDumpStage',
    'split_if_oversize',
    'TelegramSink',
    'S3Sink',
    'create_sink',
    'RetentionSweeper'
]
