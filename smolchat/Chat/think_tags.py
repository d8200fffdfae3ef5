# think_tags.py
# Description: Rewrites reasoning spans in model output for display
#
# Imports
import re
#
########################################################################################################################
#
# Functions:

# Innermost <think>...</think> span: its content may not contain another opening tag
_THINK_SPAN_PATTERN = re.compile(r"<think>((?:(?!<think>).)*?)</think>", re.DOTALL)


def quote_think_spans(text: str) -> str:
    """
    Replace every complete <think>...</think> span with <quote>...</quote>.

    Spans may cross lines. Nested spans are rewritten from the inside out until
    no complete span remains, so applying the transform twice gives the same
    result as applying it once. Unclosed tags are left as they are.
    """
    if "<think>" not in text:
        return text
    while True:
        rewritten = _THINK_SPAN_PATTERN.sub(r"<quote>\1</quote>", text)
        if rewritten == text:
            return rewritten
        text = rewritten

#
# End of think_tags.py
########################################################################################################################
