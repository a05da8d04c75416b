"""Shared constants for ecsdeployer."""

STAGE_BUILD = "build"
STAGE_PUBLISH = "publish"
STAGE_MIGRATE = "migrate"
STAGE_UPDATE = "update"
STAGES = (STAGE_BUILD, STAGE_PUBLISH, STAGE_MIGRATE, STAGE_UPDATE)

DEFAULT_PLATFORM = "linux/amd64"
DEFAULT_CONFIG_FILE = ".ecsdeployer.yml"
WORK_DIR = ".ecsdeployer"
STATE_FILE_NAME = "run-state.json"
MANIFEST_FILE_NAME = "run-manifest.json"

DEFAULT_DB_PORT = 5432
DEFAULT_MIGRATIONS_TABLE = "ecsdeployer_migrations"
MIGRATION_SUFFIX = ".sql"

TASK_DEFINITION_READ_ONLY_FIELDS = (
    "taskDefinitionArn",
    "revision",
    "status",
    "requiresAttributes",
    "compatibilities",
    "registeredAt",
    "registeredBy",
    "deregisteredAt",
)
IMAGE_PLACEHOLDER = "<IMAGE_URI>"
