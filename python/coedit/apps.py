import logging

from django.apps import AppConfig


class CoeditConfig(AppConfig):
    name = "coedit"
    default_auto_field = "django.db.models.BigAutoField"

    def ready(self):
        # Import modules so their loggers exist before the filter is installed
        import coedit.backends.database  # noqa: F401
        import coedit.backends.redis  # noqa: F401
        import coedit.cursor  # noqa: F401
        import coedit.hub  # noqa: F401
        import coedit.websocket  # noqa: F401
        from coedit.security import LogSanitizerFilter

        # Field names and user ids in coedit.* log records come from clients.
        # Logger filters don't propagate, so each module logger gets one.
        log_filter = LogSanitizerFilter()
        names = ["coedit"] + [
            name for name in logging.root.manager.loggerDict if name.startswith("coedit.")
        ]
        for name in names:
            target = logging.getLogger(name)
            if not any(isinstance(f, LogSanitizerFilter) for f in target.filters):
                target.addFilter(log_filter)
