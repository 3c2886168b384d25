from facegate.pipeline.orchestrator import RecognitionPipeline, TimeoutGuard

__all__ = ["RecognitionPipeline", "TimeoutGuard"]
