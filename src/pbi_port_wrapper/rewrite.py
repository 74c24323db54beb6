"""Database reference rewriting for XMLA requests.

Power BI Desktop hosts its model in a local Analysis Services instance whose
database id is a fresh GUID every time the report is opened. Clients that were
pointed at an older session still send the old GUID (or a friendly name the
engine does not know). We rewrite every reference we can recognize so the
request lands on the database that is actually loaded.

Three forms of the same logical field show up in the wild:
1. <DatabaseID>guid</DatabaseID> elements in Discover/Execute bodies
2. CatalogName="guid" attributes
3. Initial Catalog=guid / Database=guid pairs inside connection strings

The substitution is textual on purpose. We never parse the envelope, so
anything we don't recognize goes through untouched.
"""

import re
from dataclasses import dataclass

# GUID-ish token: hex digits and hyphens, nothing else
_ID_TOKEN = r"[a-fA-F0-9\-]+"


@dataclass(frozen=True)
class RewriteRule:
    """One pattern -> replacement step, parameterized by the target database."""

    name: str
    pattern: re.Pattern[str]
    template: str

    def replacement(self, target_database: str) -> str:
        return self.template.format(target=target_database)

    def apply(self, text: str, target_database: str) -> tuple[str, int]:
        """Returns the rewritten text and how many references were replaced."""
        replacement = self.replacement(target_database)
        # Callable replacement so backslashes in the target are taken literally
        return self.pattern.subn(lambda _match: replacement, text)


# Order matters: it's the order the original tool applied them in.
REWRITE_RULES: tuple[RewriteRule, ...] = (
    RewriteRule(
        name="database_id",
        pattern=re.compile(rf"<DatabaseID>{_ID_TOKEN}</DatabaseID>", re.IGNORECASE),
        template="<DatabaseID>{target}</DatabaseID>",
    ),
    RewriteRule(
        name="catalog_name",
        pattern=re.compile(rf"""CatalogName\s*=\s*['"]{_ID_TOKEN}['"]""", re.IGNORECASE),
        template='CatalogName="{target}"',
    ),
    RewriteRule(
        name="initial_catalog",
        pattern=re.compile(rf"(Initial\s+Catalog|Database)\s*=\s*{_ID_TOKEN}", re.IGNORECASE),
        template="Initial Catalog={target}",
    ),
)


def rewrite_with_report(
    text: str,
    target_database: str,
    rules: tuple[RewriteRule, ...] = REWRITE_RULES,
) -> tuple[str, dict[str, int]]:
    """Like rewrite_database_references, but also says what each rule did.

    Returns:
        (rewritten text, {rule name: number of replacements})
    """
    counts: dict[str, int] = {}
    for rule in rules:
        text, counts[rule.name] = rule.apply(text, target_database)
    return text, counts


def rewrite_database_references(
    text: str,
    target_database: str,
    rules: tuple[RewriteRule, ...] = REWRITE_RULES,
) -> str:
    """Point every recognized database reference in ``text`` at ``target_database``.

    All rules run on every message whether or not they match. A rule with no
    match is a no-op, so text without any reference comes back unchanged.

    Args:
        text: A complete XMLA message, already decoded
        target_database: The database id/name to substitute in
        rules: Rules to apply, in order

    Returns:
        The rewritten message
    """
    rewritten, _ = rewrite_with_report(text, target_database, rules)
    return rewritten
