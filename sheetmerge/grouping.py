# sheetmerge/grouping.py

from typing import Any, Dict, Iterable, List


def canonical_id(value: Any) -> str:
    """
    Single key type for table, view and template ids.

    The data source hands ids back as numbers in some places and strings in
    others; 12, 12.0 and "12" all map to "12".
    """
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def group_records(
    records: Iterable[Dict[str, Any]],
    template_field: str,
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Partition records by the value of `template_field`.

    Records whose template id is missing or falsy are left out. Within a
    group the input order is kept; groups appear in order of first sighting.
    """
    groups: Dict[str, List[Dict[str, Any]]] = {}

    for record in records:
        template_id = record.get(template_field)
        if not template_id:
            continue
        groups.setdefault(canonical_id(template_id), []).append(record)

    return groups
