"""Configuration file schema and defaults for saanify-ops."""

CONFIG_FILENAME = "saanify-ops.yml"

_STRING_LIST = {"type": "array", "items": {"type": "string"}}

_RETRY_SCHEMA = {
    "type": "object",
    "properties": {
        "max_attempts": {"type": "integer", "minimum": 1},
        "initial_delay": {"type": "number", "minimum": 0},
        "max_delay": {"type": "number", "minimum": 0},
    },
    "additionalProperties": False,
}

OPS_CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "project": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "root": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "paths": {
            "type": "object",
            "properties": {
                "backups_dir": {"type": "string", "minLength": 1},
                "logs_dir": {"type": "string", "minLength": 1},
                "env_file": {"type": "string"},
                "backup_key_file": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "database": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "SQLAlchemy URL, or memory:// for an in-process store"},
                "echo": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "security": {
            "type": "object",
            "properties": {
                "token": {"type": "string"},
                "backup_key": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "environment": {
            "type": "object",
            "properties": {
                "required": _STRING_LIST,
                "optional": _STRING_LIST,
                "values": {
                    "type": "object",
                    "additionalProperties": {"type": "string"},
                },
            },
            "additionalProperties": False,
        },
        "backup": {
            "type": "object",
            "properties": {
                "critical_files": _STRING_LIST,
                "default_kind": {"type": "string", "enum": ["full", "incremental"]},
                "encrypt": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "health": {
            "type": "object",
            "properties": {
                "base_url": {"type": "string", "pattern": r"^https?://"},
                "api_paths": _STRING_LIST,
                "ui_paths": _STRING_LIST,
                "required_files": _STRING_LIST,
                "required_dirs": _STRING_LIST,
                "timeout": {"type": "number", "exclusiveMinimum": 0},
                "persist_reports": {"type": "boolean"},
                "retry": _RETRY_SCHEMA,
            },
            "additionalProperties": False,
        },
        "deploy": {
            "type": "object",
            "properties": {
                "hook_url": {"type": "string"},
                "timeout": {"type": "number", "exclusiveMinimum": 0},
                "step_timeout": {"type": "number", "exclusiveMinimum": 0},
                "retry": _RETRY_SCHEMA,
            },
            "additionalProperties": False,
        },
        "changes": {
            "type": "object",
            "properties": {
                "base_ref": {"type": "string"},
                "window_minutes": {"type": "integer", "minimum": 1},
                "watch_dirs": _STRING_LIST,
                "patterns": {
                    "type": "object",
                    "properties": {
                        "schema": _STRING_LIST,
                        "api": _STRING_LIST,
                        "ui": _STRING_LIST,
                        "docs": _STRING_LIST,
                    },
                    "additionalProperties": False,
                },
            },
            "additionalProperties": False,
        },
        "bootstrap": {
            "type": "object",
            "properties": {
                "admin_email": {"type": "string", "pattern": r"^[^@\s]+@[^@\s]+$"},
                "admin_name": {"type": "string"},
                "admin_password": {"type": "string"},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}

DEFAULT_CONFIG = {
    "project": {
        "name": "saanify",
        "root": ".",
    },
    "paths": {
        "backups_dir": "backups",
        "logs_dir": "logs",
        "env_file": ".env",
        "backup_key_file": ".saanify-backup.key",
    },
    "database": {
        "url": "sqlite:///saanify.db",
        "echo": False,
    },
    "security": {
        "token": "",
        "backup_key": "",
    },
    "environment": {
        "required": ["DATABASE_URL", "NEXTAUTH_SECRET"],
        "optional": ["NEXTAUTH_URL", "NODE_ENV"],
        "values": {},
    },
    "backup": {
        "critical_files": [
            "package.json",
            "next.config.ts",
            "tailwind.config.ts",
            "tsconfig.json",
            "prisma/schema.prisma",
        ],
        "default_kind": "full",
        "encrypt": True,
    },
    "health": {
        "base_url": "http://localhost:3000",
        "api_paths": ["/api/health"],
        "ui_paths": ["/", "/login", "/admin", "/client"],
        "required_files": ["package.json", "prisma/schema.prisma"],
        "required_dirs": ["src", "prisma"],
        "timeout": 10,
        "persist_reports": True,
        "retry": {"max_attempts": 2, "initial_delay": 1.0, "max_delay": 5.0},
    },
    "deploy": {
        "hook_url": "",
        "timeout": 30,
        "step_timeout": 300,
        "retry": {"max_attempts": 3, "initial_delay": 2.0, "max_delay": 30.0},
    },
    "changes": {
        "base_ref": "HEAD~1",
        "window_minutes": 60,
        "watch_dirs": ["prisma", "src", "docs"],
        "patterns": {
            "schema": ["prisma/schema.prisma", "prisma/migrations/*"],
            "api": ["src/app/api/*", "src/lib/*"],
            "ui": ["src/app/*", "src/components/*", "src/hooks/*", "public/*"],
            "docs": ["*.md", "docs/*"],
        },
    },
    "bootstrap": {
        "admin_email": "superadmin@saanify.com",
        "admin_name": "Super Admin",
        "admin_password": "",
    },
}

# Environment variable -> (section, key)
ENV_OVERRIDES = {
    "SAANIFY_OPS_TOKEN": ("security", "token"),
    "DATABASE_URL": ("database", "url"),
    "SAANIFY_DEPLOY_HOOK_URL": ("deploy", "hook_url"),
    "SAANIFY_BASE_URL": ("health", "base_url"),
    "SAANIFY_ADMIN_PASSWORD": ("bootstrap", "admin_password"),
    "SAANIFY_BACKUP_KEY": ("security", "backup_key"),
}
