from knowledge_rag.execution.tokens import CharacterTokenCounter, load_token_counter


def test_character_counter_rounds_up() -> None:
    counter = CharacterTokenCounter()

    assert counter.count_tokens("") == 0
    assert counter.count_tokens("abcd") == 1
    assert counter.count_tokens("abcde") == 2


def test_unknown_model_has_no_tokenizer() -> None:
    assert load_token_counter("definitely-not-a-model") is None
