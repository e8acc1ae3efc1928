from .security_middleware import (
    RENDERED_HTML_HEADER,
    RequestPipeline,
    SecurityMiddleware,
    build_pipeline,
    rendered_html_response,
)

__all__ = [
    'RENDERED_HTML_HEADER',
    'RequestPipeline',
    'SecurityMiddleware',
    'build_pipeline',
    'rendered_html_response'
]
