"""各类生成请求的提示词构造。"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Sequence

from codegrader.schemas.evaluation import StudentHistory

EVALUATION_TOPICS = (
    "algorithms, data structures, object-oriented programming, error handling, "
    "code style, efficiency, problem-solving approach"
)

DIFFICULTY_GUIDELINES = {
    "easy": (
        "EASY: straightforward logic, basic arrays/strings, one-loop solutions, very few edge cases. "
        "Examples: reverse array, sum of numbers, check palindrome."
    ),
    "medium": (
        "MEDIUM: requires some thinking and common patterns (two pointers, sliding window, hashing, "
        "BFS/DFS), multiple edge cases. Examples: longest substring, binary search problems."
    ),
    "hard": (
        "HARD: multiple algorithms combined, advanced DP, graphs, trees, backtracking, many edge cases. "
        "Examples: N-Queens, DP on trees, Dijkstra variants."
    ),
}


def format_test_cases(test_cases: Optional[Sequence[Mapping[str, Any]]]) -> str:
    if not test_cases:
        return "No test cases provided"
    lines = []
    for index, case in enumerate(test_cases, start=1):
        data = case if isinstance(case, Mapping) else {}
        value_in = data.get("input") or ""
        value_out = data.get("expected_output") or data.get("expectedOutput") or data.get("output") or ""
        lines.append(f'Test {index}: Input="{value_in}", Expected="{value_out}"')
    return "\n".join(lines)


def evaluation_prompts(
    student_code: str,
    reference_solution: str,
    problem_statement: str,
    test_cases: Optional[Sequence[Mapping[str, Any]]] = None,
    student_history: Optional[StudentHistory] = None,
) -> tuple[str, str]:
    system_prompt = (
        "You are an expert Java programming instructor evaluating student code submissions.\n"
        "Provide constructive feedback, identify strengths and weaknesses, and suggest improvements.\n"
        "Be specific, educational, and encouraging. Focus on code quality, best practices, "
        "and learning opportunities."
    )

    history_context = ""
    if student_history is not None and not student_history.is_empty:
        history_context = (
            "\n\nStudent's previous weak topics: "
            f"{json.dumps(student_history.weak_topics)}\n"
            "Student's previous strong topics: "
            f"{json.dumps(student_history.strong_topics)}"
        )
        if student_history.average_score is not None:
            history_context += f"\nAverage score of previous contests: {student_history.average_score}/100"

    user_prompt = (
        "Evaluate the following Java code submission:\n\n"
        f"**Problem Description:**\n{problem_statement or 'No description provided'}\n\n"
        f"**Expected Solution (Reference):**\n```java\n{reference_solution or '// No solution provided'}\n```\n\n"
        f"**Student's Submission:**\n```java\n{student_code}\n```\n\n"
        f"**Test Cases:**\n{format_test_cases(test_cases)}"
        f"{history_context}\n\n"
        "Provide the evaluation in the following JSON format:\n"
        "{\n"
        '  "strengths": ["strength1", "strength2"],\n'
        '  "weaknesses": ["weakness1", "weakness2"],\n'
        '  "suggestions": ["suggestion1", "suggestion2"],\n'
        '  "topicScores": {"topicName": 0-100},\n'
        '  "overallScore": 0-100,\n'
        '  "detailedAnalysis": "Detailed written analysis of the code",\n'
        '  "practiceQuestions": [\n'
        "    {\n"
        '      "title": "Question title",\n'
        '      "description": "Problem description",\n'
        '      "codeTemplate": "// Your code here",\n'
        '      "testCases": [{"input": "...", "expectedOutput": "..."}],\n'
        '      "topics": ["topic1", "topic2"],\n'
        '      "difficulty": "easy|medium|hard"\n'
        "    }\n"
        "  ]\n"
        "}\n\n"
        f"Topics to evaluate (rate 0-100): {EVALUATION_TOPICS}.\n\n"
        "Generate 5-10 practice questions focusing on the weak areas identified in this contest. "
        "Avoid repeating topics unnecessarily."
    )
    return system_prompt, user_prompt


def topic_analysis_prompts(
    title: str,
    description: str,
    reference_solution: str,
    test_cases: Optional[Sequence[Mapping[str, Any]]] = None,
) -> tuple[str, str]:
    system_prompt = (
        "You are an expert Java programming instructor analyzing coding questions to identify topics.\n"
        "Return ONLY a JSON array of topic names, no markdown, no explanations."
    )
    user_prompt = (
        "Analyze the following Java coding question and identify ALL relevant topics:\n\n"
        f"**Title:** {title or 'Untitled'}\n\n"
        f"**Description:**\n{description or 'No description provided'}\n\n"
        f"**Reference Solution:**\n```java\n{reference_solution or '// No solution provided'}\n```\n\n"
        f"**Test Cases:**\n{format_test_cases(test_cases)}\n\n"
        "Each topic should be a common Java programming concept, for example: "
        '"arrays", "2d arrays", "strings", "loops", "hashmap", "recursion", "dynamic programming", '
        '"graphs", "trees", "sorting", "searching", "object-oriented programming", "exception handling".\n\n'
        'Return ONLY this format: ["topic1", "topic2", "topic3"]\n\n'
        "Identify 1-5 relevant topics. Be specific but use common topic names."
    )
    return system_prompt, user_prompt


def historical_practice_prompts(
    weak_topics: List[str],
    strong_topics: List[str],
    past_scores: Sequence[float],
    count: int,
) -> tuple[str, str]:
    system_prompt = (
        "You are an expert Java programming instructor creating personalized practice questions.\n"
        "Generate questions that address the student's weak areas while building on their strengths."
    )
    if past_scores:
        average = sum(past_scores) / len(past_scores)
        performance = (
            f"- {len(past_scores)} previous contests evaluated\n"
            f"- Average score: {average:.1f}/100"
        )
    else:
        performance = "No previous evaluations"

    user_prompt = (
        f"Generate {count} Java practice questions for a student with the following profile:\n\n"
        f"**Weak Topics (focus here):**\n{', '.join(weak_topics) or 'General Java fundamentals'}\n\n"
        f"**Strong Topics (can build on):**\n{', '.join(strong_topics) or 'None identified yet'}\n\n"
        f"**Past Performance Summary:**\n{performance}\n\n"
        "Provide questions in JSON array format:\n"
        "[\n"
        "  {\n"
        '    "title": "Question title",\n'
        '    "description": "Detailed problem description",\n'
        '    "codeTemplate": "// Starter code template",\n'
        '    "testCases": [{"input": "...", "expectedOutput": "..."}],\n'
        '    "topics": ["topic1", "topic2"],\n'
        '    "difficulty": "easy|medium|hard"\n'
        "  }\n"
        "]\n\n"
        "Focus on weak topics but vary difficulty. Include edge cases in test cases."
    )
    return system_prompt, user_prompt


def historical_report_prompts(
    evaluations_summary: List[Dict[str, Any]],
    topics: Mapping[str, Any],
) -> tuple[str, str]:
    system_prompt = (
        "You are an expert Java programming instructor creating a comprehensive student progress report.\n"
        "Analyze trends, identify patterns, and provide actionable insights."
    )
    user_prompt = (
        "Create a comprehensive progress report for a Java student covering ALL contests "
        "from the first to the last.\n\n"
        f"**All Contest Evaluations ({len(evaluations_summary)} total):**\n"
        f"{json.dumps(evaluations_summary, indent=2, ensure_ascii=False)}\n\n"
        f"**Current Topic Analytics:**\n{json.dumps(dict(topics), indent=2, ensure_ascii=False)}\n\n"
        "The merit score is made of contest performance (out of 40) and mock interviews (out of 60).\n\n"
        "Provide a detailed report in JSON format:\n"
        "{\n"
        '  "summary": "Overall performance summary",\n'
        '  "meritScore": {\n'
        '    "total": 0-100,\n'
        '    "breakdown": {\n'
        '      "contestScore": "Score from contests (out of 40)",\n'
        '      "mockScore": "Score from mock interviews (out of 60)",\n'
        '      "explanation": "How the score was calculated"\n'
        "    }\n"
        "  },\n"
        '  "trends": {"improving": ["topic1"], "declining": ["topic2"], "stable": ["topic3"]},\n'
        '  "strengths": ["overall strength 1"],\n'
        '  "weaknesses": ["overall weakness 1"],\n'
        '  "recommendations": ["recommendation 1"],\n'
        '  "nextSteps": ["action item 1"],\n'
        '  "contestHistory": [{"contest": "Contest title", "score": 0-100, "note": "short note"}]\n'
        "}"
    )
    return system_prompt, user_prompt


def coding_question_prompts(topics: str, difficulty: str) -> tuple[str, str]:
    system_prompt = (
        "You are an expert Java programming instructor creating coding practice questions.\n"
        "Return ONLY valid JSON, no markdown, no explanations."
    )
    guideline = DIFFICULTY_GUIDELINES.get(difficulty, DIFFICULTY_GUIDELINES["medium"])
    user_prompt = (
        f'Generate exactly 5 Java coding practice questions on the topics: "{topics}".\n\n'
        f"Difficulty level: {difficulty}\n{guideline}\n\n"
        "For each question provide a clear problem description, a code template with the method "
        "signature, exactly 3 test cases with input and expected output, and the difficulty.\n\n"
        "Test case input format:\n"
        '- Arrays: first line is the length, second line the space separated values, e.g. "3\\n1 2 3"\n'
        '- Single values: just the value, e.g. "5"\n'
        '- Empty arrays: "0\\n"\n\n'
        "Return ONLY this JSON format:\n"
        "{\n"
        '  "questions": [\n'
        "    {\n"
        '      "id": 1,\n'
        '      "title": "Question title",\n'
        '      "description": "Detailed problem description with examples",\n'
        '      "codeTemplate": "public class Solution {\\n    public int solve(int[] arr) {\\n        return 0;\\n    }\\n}",\n'
        '      "testCases": [{"input": "3\\n1 2 3", "expectedOutput": "6"}],\n'
        '      "difficulty": "easy"\n'
        "    }\n"
        "  ]\n"
        "}\n\n"
        f"All questions must relate to: {topics}. Difficulty must match: {difficulty}. "
        "Questions should progress from simpler to more complex."
    )
    return system_prompt, user_prompt
