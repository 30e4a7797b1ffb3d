from .client import MixamClient, MixamError  # noqa: F401
from .interactions import (  # noqa: F401
    create_webhook_interaction,
    log_interactions,
    to_interaction,
)
from .orders import (  # noqa: F401
    PrintOrderError,
    cancel_print_order,
    map_mixam_status,
    prepare_document,
    process_webhook,
    refresh_order_status,
    submit_print_order,
    verify_signature,
)
from .mxjdf import (  # noqa: F401
    build_mxjdf_document,
    serialize_mxjdf_document,
    validate_mxjdf_document,
)
