"""Story and storybook generation flows.

Re-exports the flow entry points so routes can `from storywizard import pipeline`.
"""

from .exemplars import generate_actor_exemplar, generate_storybook_exemplars  # noqa: F401
from .page_image import (  # noqa: F401
    PROMPT_STRATEGIES,
    ImageGenerationError,
    generate_page_image,
)
from .story_compile import compile_story  # noqa: F401
from .storybook_images import (  # noqa: F401
    StorybookLockedError,
    generate_storybook_images,
    record_run_failure,
)
from .synopsis import generate_story_synopsis, write_synopsis  # noqa: F401
from .text_compile import compile_story_text  # noqa: F401
