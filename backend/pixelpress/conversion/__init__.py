from .service import JobProcessor, get_job_processor
from .models import ConversionOptions, ConversionResult, SupportedFormats

__all__ = ["JobProcessor", "get_job_processor", "ConversionOptions", "ConversionResult", "SupportedFormats"]
