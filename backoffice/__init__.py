"""
Backoffice Package - Application Wiring.

============================================================
PACKAGE OVERVIEW
============================================================
Composes the batch import/export service and the export
scheduler into one application object, and exposes the
command-line tools.

    +-----------------------------------------------------+
    |                    BackofficeApp                    |
    |-----------------------------------------------------|
    |  BatchOperationsService | import/export pipeline    |
    |  ScheduleRegistry       | recurring export jobs     |
    |  DeliveryRouter         | email / webhook / storage |
    +-----------------------------------------------------+

============================================================
"""

from .app import BackofficeApp, create_app


__all__ = [
    "BackofficeApp",
    "create_app",
]
