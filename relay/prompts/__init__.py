"""
Prompt files for the realtime session.

Each <name>.yaml defines:
- instructions: behavioural instructions sent on session start
- project_context: template sent when a project is selected; fields
  {project}, {full_name}, {url}, {tool_names}
"""
