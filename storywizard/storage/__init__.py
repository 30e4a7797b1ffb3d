"""File-based JSON document store, object bucket, and app config.

Data layout:
  data/
    storySessions/<id>.json      Story creation session (child, mode, actors)
    storySessions/<id>/
      messages/<id>.json         Chat transcript (kind, text, createdAt)
      events/<id>.json           Structured session events
    stories/<id>.json            Compiled story (text, synopsis, actors)
    stories/<id>/storybooks/<id>.json          Storybook + progress trackers
    stories/<id>/storybooks/<id>/pages/<id>.json
    characters/, children/       Actor records
    exemplars/                   Cached actor reference sheets
    printOrders/, printProducts/ Print fulfillment
    storyTypes/, storyOutputTypes/, printLayouts/, imageStyles/
    aiRunTraces/, aiFlowLogs/    LLM call traces and audit logs
    bucket/                      Uploaded objects (+ .meta.json sidecars)
    config.json                  App settings (connections, models, prompts)

Documents are addressed by slash paths ("stories/abc"); see documents.py.

Config: get_config() returns defaults merged with stored values.
update_config() applies partial updates group by group.
"""

# Re-export all public symbols so `from storywizard import storage` keeps working.

from .core import (  # noqa: F401
    bucket_enabled,
    data_dir,
    init_storage,
    new_id,
    now_iso,
)

from .documents import (  # noqa: F401
    ArrayUnion,
    DocumentNotFoundError,
    Increment,
    add_doc,
    delete_doc,
    find_by_field,
    get_doc,
    get_docs,
    list_docs,
    set_doc,
    update_doc,
)

from .bucket import (  # noqa: F401
    BucketUnavailableError,
    delete_object,
    object_url,
    read_object,
    upload_object,
)

from .config import (  # noqa: F401
    get_config,
    update_config,
)

from .traces import (  # noqa: F401
    calculate_token_cost,
    complete_run_trace,
    initialize_run_trace,
    log_ai_call,
    log_ai_flow,
)

from .events import (  # noqa: F401
    list_session_events,
    log_session_event,
    update_character_usage,
)
