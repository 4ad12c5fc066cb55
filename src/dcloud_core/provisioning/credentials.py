"""Service consumer credential that binds a tenant to its access token.

A copied database still carries the consumer of the site it came from;
rotating it replaces that consumer with a fresh one for the new token.
"""

import uuid

from dcloud_core.admin_tool import AdminTool
from dcloud_core.utils.crypto import generate_hex_secret

CONSUMER_LABEL = "Dashboard Space Token"


def credential_rotation_sql(token: str, consumer_uuid: str, secret: str) -> str:
    """Replace the tenant's service consumer with a fresh one bound to ``token``."""
    return (
        f"DELETE FROM consumers WHERE label = '{CONSUMER_LABEL}' OR third_party = 1; "
        "INSERT INTO consumers (uuid, label, secret, client_id, user_id, third_party, roles) "
        f"VALUES ('{consumer_uuid}', '{CONSUMER_LABEL}', '{secret}', '{token}', 1, 1, "
        "'a:1:{i:0;s:13:\"administrator\";}');"
    )


async def rotate_service_credential(admin: AdminTool, token: str) -> None:
    """Run the rotation through Drush.

    Raises:
        CommandError: If the statement fails (e.g. no consumers table)
    """
    sql = credential_rotation_sql(token, str(uuid.uuid4()), generate_hex_secret(16))
    (await admin.sql_query(sql)).check()
