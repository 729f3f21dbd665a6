DSL_GRAMMAR = r"""
    start: rule+

    rule: "RULE" ESCAPED_STRING ":" "WHEN" condition_list "THEN" decision "PRIORITY" SIGNED_NUMBER

    condition_list: condition ("AND" condition)*

    condition: FIELD COMPARE value

    FIELD: "signal.severity" | "signal.source" | "signal.rule_id"
         | "subject.namespace"
         | "window.count" | "window.max_severity"
         | /payload\.[A-Za-z0-9_.\-]+/

    COMPARE: "==" | "!=" | ">=" | "<=" | ">" | "<"

    value: ESCAPED_STRING -> string
         | SIGNED_NUMBER  -> number

    decision: "ignore"     -> ignore
            | "watch"      -> watch
            | "quarantine" -> quarantine

    COMMENT: /#[^\n]*/

    %import common.ESCAPED_STRING
    %import common.SIGNED_NUMBER
    %import common.WS
    %ignore WS
    %ignore COMMENT
"""
