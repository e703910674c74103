from taskpilot.context.accumulator import ContextAccumulator
from taskpilot.context.compressor import ContextCompressor

__all__ = ["ContextAccumulator", "ContextCompressor"]
