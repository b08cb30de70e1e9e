# prompts.py
# Prompt text for every stage of a run.
# Templates are plain str.format strings; builders fill them in.

MAX_ERROR_CHARS = 2000

SYSTEM_PROMPT = """\
You are an expert Python test engineer working inside a tool-calling loop.

Your job is to write pytest unit tests that raise the coverage of a target
module. You act only through the tools you are given:
- read_file / write_file / write_file_from_line / search_replace to edit files
- analyze_class to see the structure of the module under test
- compile_project, execute_test, check_syntax and the coverage tools when
  they are available in the current phase

Rules:
- Import the code under test exactly as the project's package layout requires.
- Cover the normal path, boundary values and error handling of each method.
- Never modify the module under test, only the test file.
- Keep existing passing tests intact when you add new ones.
- When you are done, answer in plain text without calling any tool.\
"""

TASK_PROMPT = """\
## Generate unit tests

**Target file**: {target_file}
**Test file**: {test_file}
**Coverage goal**: {threshold:.0f}% line coverage

{coverage_section}

Steps:
1. Use `analyze_class` on the target file and `read_file` to read it.
2. Read the test file if it exists so you extend rather than overwrite it.
3. Write tests for the least covered methods first.
4. Compile, run the tests and check coverage with the available tools.
5. Fix any failure you see, then summarise what you covered.\
"""

GENERATE_PROMPT = """\
## Generate test code

**Target file**: {target_file}
**Target method**: `{method_name}`
**Test file**: {test_file}
**Current coverage**: {coverage:.1f}%

Write unit tests for `{method_name}`:

1. Use `read_file("{test_file}")` to read the current test file, if it exists.
2. Read the target method and identify the paths that need tests.
3. Write tests covering the normal path, boundary conditions and error handling.
4. Append the tests with `write_file_from_line`, or create the file with `write_file`.

Only write code. Syntax check, test run and coverage measurement happen
automatically afterwards; do not run them yourself.

Reply "Code written" when you are done.\
"""

MORE_TESTS_PROMPT = """\
## Coverage below goal, more tests needed

**Target method**: `{method_name}`
**Current coverage**: {coverage:.1f}% (goal: {threshold:.0f}%)
**Gap**: {gap:.1f}%

Add more test cases:

1. Use `read_file("{test_file}")` to see the tests that already exist.
2. Use `read_file("{target_file}")` to find the paths that are still uncovered.
3. Target boundary values, exception paths and every branch of each condition.
4. Append the new tests with `write_file_from_line`.

Only write code; verification runs automatically.

Reply "Code written" when you are done.\
"""

SYNTAX_FIX_PROMPT = """\
## Fix syntax error

**Test file**: {test_file}

**Error**:
```
{error}
```

1. Use `read_file("{test_file}")` to read the test file.
2. Locate the problem (unbalanced brackets, bad indentation, stray text).
3. Fix it with `search_replace` or `write_file`.

The syntax check reruns automatically. Reply "Fixed" when you are done.\
"""

LSP_FIX_PROMPT = """\
## Fix lint errors

**Test file**: {test_file}

**Linter output**:
```
{error}
```

1. Use `read_file("{test_file}")` to read the test file.
2. Typical causes:
   - "undefined name" → add the missing import
   - "imported but unused" → remove the import
   - "redefinition of unused" → rename or delete the duplicate test
3. Fix the reported lines with `search_replace`.

The check reruns automatically. Reply "Fixed" when you are done.\
"""

COMPILE_FIX_PROMPT = """\
## Fix compilation error

**Test file**: {test_file}

**Compiler output**:
```
{error}
```

1. Use `read_file("{test_file}")` to read the test file.
2. Read the module under test if you need to confirm its API.
3. Common causes: wrong import path, misspelled names, invalid syntax.
4. Fix the code.

The project is recompiled automatically. Reply "Fixed" when you are done.\
"""

TEST_FIX_PROMPT = """\
## Fix failing tests

**Test file**: {test_file}
**Test module**: {test_class}

**Test output**:
```
{error}
```

1. Use `read_file("{test_file}")` to read the test file.
2. Work out why each test failed:
   - assertion failed → check the expected value against the real behaviour
   - mock misconfigured → check return_value / side_effect
   - unexpected exception → assert it with pytest.raises or fix the setup
3. Fix the tests, not the module under test.

The tests rerun automatically. Reply "Fixed" when you are done.\
"""


def truncate_error(error: str | None) -> str:
    if not error:
        return "No details available"
    if len(error) > MAX_ERROR_CHARS:
        return error[:MAX_ERROR_CHARS] + "\n... (truncated)"
    return error


def build_task_prompt(target_file: str, test_file: str, threshold: float, coverage_info: str | None) -> str:
    if coverage_info:
        coverage_section = f"**Current coverage**:\n```\n{coverage_info}\n```"
    else:
        coverage_section = "No coverage data is available yet."
    return TASK_PROMPT.format(
        target_file=target_file,
        test_file=test_file,
        threshold=threshold,
        coverage_section=coverage_section,
    )


def build_generate_prompt(target_file: str, method_name: str, test_file: str, coverage: float) -> str:
    return GENERATE_PROMPT.format(
        target_file=target_file, method_name=method_name, test_file=test_file, coverage=coverage
    )


def build_more_tests_prompt(
    target_file: str, method_name: str, test_file: str, coverage: float, threshold: float
) -> str:
    return MORE_TESTS_PROMPT.format(
        target_file=target_file,
        method_name=method_name,
        test_file=test_file,
        coverage=coverage,
        threshold=threshold,
        gap=max(threshold - coverage, 0.0),
    )


def build_syntax_fix_prompt(test_file: str, error: str | None) -> str:
    return SYNTAX_FIX_PROMPT.format(test_file=test_file, error=truncate_error(error))


def build_lsp_fix_prompt(test_file: str, error: str | None) -> str:
    return LSP_FIX_PROMPT.format(test_file=test_file, error=truncate_error(error))


def build_compile_fix_prompt(test_file: str, error: str | None) -> str:
    return COMPILE_FIX_PROMPT.format(test_file=test_file, error=truncate_error(error))


def build_test_fix_prompt(test_file: str, test_class: str, error: str | None) -> str:
    return TEST_FIX_PROMPT.format(test_file=test_file, test_class=test_class, error=truncate_error(error))
