from voicepilot.app.fallback_extractor import extract_function_name


def test_fenced_json_with_function_name():
    text = 'Sure!\n```json\n{"function_name": "getCameraImage"}\n```'
    assert extract_function_name(text) == "getCameraImage"


def test_alternate_keys_are_recognized():
    assert extract_function_name('```json\n{"functionName": "openPhoneGallery"}\n```') == "openPhoneGallery"
    assert extract_function_name('```\n{"name": "getTime"}\n```') == "getTime"


def test_key_priority():
    text = '```json\n{"name": "b", "function_name": "a"}\n```'
    assert extract_function_name(text) == "a"


def test_nested_arguments():
    text = '```json\n{"name": "getWeather", "args": {"city": "Paris"}}\n```'
    assert extract_function_name(text) == "getWeather"


def test_first_block_wins():
    text = '```json\n{"name": "first"}\n``` and ```json\n{"name": "second"}\n```'
    assert extract_function_name(text) == "first"


def test_absent_or_invalid_block_yields_none():
    assert extract_function_name("") is None
    assert extract_function_name('{"name": "getTime"}') is None
    assert extract_function_name("```json\n{not json}\n```") is None
    assert extract_function_name('```json\n{"other": 1}\n```') is None
