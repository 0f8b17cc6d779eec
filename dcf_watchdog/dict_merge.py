import typing


def dict_merge(base_dct: typing.Mapping, merge_dct: typing.Mapping) -> dict:
    """Deep merge of two conf.d blocks

    Nested mappings are merged key by key, any other value from `merge_dct`
    replaces the one from `base_dct`. Neither argument is modified.
    """
    merged = dict(base_dct)
    for key, value in merge_dct.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = dict_merge(current, value)
        merged[key] = value
    return merged
