from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="EditorPresence",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("document_id", models.BigIntegerField(db_index=True)),
                ("user_id", models.CharField(max_length=255)),
                ("field_name", models.CharField(max_length=255)),
                ("cursor_position", models.PositiveIntegerField(default=0)),
                ("selection_start", models.PositiveIntegerField(blank=True, null=True)),
                ("selection_end", models.PositiveIntegerField(blank=True, null=True)),
                ("last_seen", models.DateTimeField(db_index=True)),
            ],
            options={
                "db_table": "coedit_editor_presence",
                "ordering": ["-last_seen"],
            },
        ),
        migrations.AddConstraint(
            model_name="editorpresence",
            constraint=models.UniqueConstraint(
                fields=("document_id", "user_id", "field_name"),
                name="coedit_presence_unique_field",
            ),
        ),
    ]
