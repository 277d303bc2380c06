STATE_DIR_NAME = ".workgraph"
CONFIG_FILE = "config.yaml"
INDEX_FILE = "index.yaml"
WORKSPACES_DIR = "workspaces"
GRAPH_FILE = "graph.yaml"
LOCK_FILE = "graph.lock"
EVENTS_FILE = "events.jsonl"
SESSIONS_FILE = "sessions.yaml"

GRAPH_FORMAT_VERSION = 1
LOCK_TIMEOUT_SECONDS = 30

ROOT_NODE_ID = "root"
WORKSPACE_ID_PREFIX = "ws"
NODE_ID_PREFIX = "node"
MEMO_ID_PREFIX = "memo"
MEMO_REFERENCE_SCHEME = "memo://"

DEFAULT_MAX_LOG_ENTRIES = 20
DEFAULT_DISPATCH_MODE = "none"
DEFAULT_DISPATCH_TIMEOUT_MS = 300_000
DEFAULT_DISPATCH_MAX_RETRIES = 3
VALID_DISPATCH_MODES = {"none", "git", "no-git"}

BRANCH_PREFIX = "workgraph"
MERGE_STRATEGIES = ("sequential", "squash", "cherry-pick", "skip")

DISPATCH_SUCCESS_COMMIT_TEMPLATE = "[workgraph] {node_id}: {title}"
DISPATCH_BACKUP_COMMIT_MESSAGE = "[workgraph] backup uncommitted changes before dispatch"
DISPATCH_FAILURE_DEFAULT_CONCLUSION = "Dispatch execution failed"
