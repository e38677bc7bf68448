from __future__ import annotations


def encode_remove_card_confirmation(card_hex: str, accepted: bool) -> str:
    """
    Encode the answer to "really remove this card?".

    Format: rm:{yes|no}:{card_hex}
    """

    answer = "yes" if accepted else "no"
    return f"rm:{answer}:{card_hex}"


def parse_remove_card_confirmation(data: str) -> tuple[bool, str]:
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != "rm" or parts[1] not in ("yes", "no"):
        raise ValueError(f"Invalid remove-card callback data: {data}")

    accepted = parts[1] == "yes"
    card_hex = parts[2]
    return accepted, card_hex
