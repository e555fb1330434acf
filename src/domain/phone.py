from __future__ import annotations


USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"


def format_e164(phone: str | None) -> str:
    digits = "".join(ch for ch in str(phone or "") if ch.isdigit())
    return f"+{digits}"


def jid_user(jid: str | None) -> str:
    """Local part of a WhatsApp address (`5511999999999@s.whatsapp.net` -> `5511999999999`)."""
    if not jid:
        return ""
    return str(jid).split("@", 1)[0]


def user_jid(user: str) -> str:
    return f"{user}@{USER_SERVER}"


def is_group_jid(jid: str | None) -> bool:
    return bool(jid) and str(jid).endswith(f"@{GROUP_SERVER}")


def brazil_number_variants(e164: str) -> list[str]:
    """
    Return the E.164 number followed by its Brazilian mobile twin, if any.

    Brazilian mobiles gained a leading ninth digit; the same person may be stored
    as +55 DD 9XXXXXXXX or +55 DD XXXXXXXX depending on when the contact was saved.
    """
    digits = e164.lstrip("+")
    variants = [e164]
    if not digits.startswith("55"):
        return variants
    area, local = digits[2:4], digits[4:]
    if len(local) == 9 and local.startswith("9"):
        variants.append(f"+55{area}{local[1:]}")
    elif len(local) == 8 and local[0] in "6789":
        variants.append(f"+55{area}9{local}")
    return variants
