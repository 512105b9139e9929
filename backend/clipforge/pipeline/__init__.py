# Clip pipeline - quota guard, fetch, transcribe, select, render, publish
"""
Clip Pipeline: Long-form Video to Short Vertical Clips

Pipeline stages, each checkpointed on the job before its status advances:
1. Quota guard: refuse to start when the owner has no clips left this period
2. Source resolution: fetch the video and re-host it on durable storage
3. Transcription: timestamped segments from a speech-to-text provider
4. Highlight selection: LLM-ranked moments, validated against the transcript
5. Clip rendering: bounded-concurrency renders, one quota unit per success
6. Publishing: best-effort fan-out to connected platforms
"""

from .orchestrator import PipelineOrchestrator

__all__ = ["PipelineOrchestrator"]
