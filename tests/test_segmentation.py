import asyncio

from dispatch_call_simulator.llm import (
    SentenceSegmenter,
    breaks_character,
    clean_caller_text,
    pin_address,
    sentence_stream,
)


def test_sentences_split_across_token_boundaries():
    segmenter = SentenceSegmenter()
    out = []
    for chunk in ["Help", " me! Th", "ere's a fire. It", "'s spreading"]:
        out.extend(segmenter.feed(chunk))
    assert out == ["Help me!", "There's a fire."]
    assert segmenter.flush() == "It's spreading"
    assert segmenter.flush() is None


def test_terminal_punctuation_needs_following_whitespace():
    segmenter = SentenceSegmenter()
    assert segmenter.feed("He is about 5.9 feet tall") == []
    assert segmenter.feed("? ") == ["He is about 5.9 feet tall?"]


def test_closing_quote_stays_with_sentence():
    segmenter = SentenceSegmenter()
    assert segmenter.feed('He yelled "get out!" Then he ran') == ['He yelled "get out!"']


def test_sentence_stream_flushes_tail():
    async def tokens():
        for token in ["Oh God. ", "Please ", "hurry"]:
            await asyncio.sleep(0)
            yield token

    async def runner():
        return [s async for s in sentence_stream(tokens())]

    assert asyncio.run(runner()) == ["Oh God.", "Please hurry"]


def test_clean_removes_stage_directions():
    text = "[crying] Please hurry! (sobbing) He's *gasps* not breathing."
    assert clean_caller_text(text) == "Please hurry! He's not breathing."


def test_clean_removes_role_prefix_and_tags():
    assert clean_caller_text("Caller: My husband fell.") == "My husband fell."
    assert clean_caller_text("<pause> It's upstairs.") == "It's upstairs."


def test_clean_keeps_ellipsis_and_silence_marker():
    assert clean_caller_text("...") == "..."
    assert clean_caller_text("Oh God. . .") == "Oh God..."
    assert clean_caller_text("I think... I think he's gone.") == "I think... I think he's gone."


def test_clean_of_pure_direction_is_empty():
    assert clean_caller_text("[silence]") == ""
    assert clean_caller_text("(whispering) ,") == ""


def test_pin_address_replaces_invented_street():
    assert pin_address("I'm at 42 Elm Street, hurry!", "125 Main Street") == "I'm at 125 Main Street, hurry!"


def test_pin_address_leaves_fixed_address_and_plain_text():
    assert pin_address("It's 125 Main Street.", "125 Main Street") == "It's 125 Main Street."
    assert pin_address("Please hurry.", "125 Main Street") == "Please hurry."
    assert pin_address("I'm at 42 Elm Street.", None) == "I'm at 42 Elm Street."


def test_breaks_character():
    assert breaks_character("This is 911, what's your emergency?")
    assert breaks_character("I'm here to help if you need anything.")
    assert breaks_character("What’s your emergency?")
    assert not breaks_character("My husband isn't breathing!")


def test_no_split_inside_open_stage_direction():
    segmenter = SentenceSegmenter()
    out = []
    for chunk in ["*breathing heavily... ", "sobbing* ", "Help me! ", "[crying. softly] Hurry."]:
        out.extend(segmenter.feed(chunk))
    out.append(segmenter.flush())
    assert out == ["*breathing heavily... sobbing* Help me!", "[crying. softly] Hurry."]
    assert [clean_caller_text(s) for s in out] == ["Help me!", "Hurry."]


def test_clean_drops_direction_left_open_at_end():
    assert clean_caller_text("Please hurry. *starts sobbing") == "Please hurry."
    assert clean_caller_text("[gasping") == ""
