"""Final prompt assembly for composite generation."""

# Instructions shared by every variant of every product
GLOBAL_RENDER_INSTRUCTIONS = """You are compositing a real product into a real customer's room photo.

Inputs: the first image is the product, the second image is the customer's room.
Output a single photorealistic image of the room with the product placed in it.

Preserve the room exactly: same camera viewpoint, framing, aspect ratio, walls, floor, furniture and lighting.
Preserve the product exactly: same shape, proportions, color, material and details. Do not redesign it.
Match the room's lighting direction, color temperature and shadows on the product.
Ground the product with contact shadows; it must not float or intersect other objects.
Add nothing else to the room and remove nothing from it."""


def assemble_final_prompt(product_context: str, variation: str) -> str:
    """
    Join the global instructions, product context and variation.

    Pure string assembly; no model call.

    Args:
        product_context: Product description from the prompt pack
        variation: The variant's placement/scale instruction

    Returns:
        Final prompt text
    """
    return "\n\n".join([
        GLOBAL_RENDER_INSTRUCTIONS,
        "Product context:",
        product_context,
        "Variation:",
        variation,
    ])
